import os
import tomllib
from pathlib import Path

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"


def load_config(path: str | Path = config_file) -> dict:
    """Read the TOML config and apply environment overrides."""
    conf = tomllib.loads(Path(path).read_text())
    conf["horizon"]["url"] = os.getenv("HORIZON_URL", conf["horizon"]["url"])
    conf["friendbot"]["url"] = os.getenv("FRIENDBOT_URL", conf["friendbot"]["url"])
    conf["registry"]["path"] = os.getenv("REGISTRY_PATH", conf["registry"]["path"])
    conf["registry"]["backend"] = os.getenv("REGISTRY_BACKEND", conf["registry"]["backend"])
    conf["server"]["port"] = int(os.getenv("PORT", conf["server"]["port"]))
    return conf


cfg = load_config()
