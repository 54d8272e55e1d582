import uvicorn

from stellar_facade.config import cfg


def main():
    server = cfg["server"]
    uvicorn.run("stellar_facade.app:app", host=server["host"], port=server["port"], lifespan="on")


if __name__ == "__main__":
    main()
