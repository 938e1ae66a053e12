"""Backend launcher: ``python -m onechat.run`` or the ``onechat`` script."""

import uvicorn


def main() -> None:
    uvicorn.run("onechat.main:app", host="127.0.0.1", port=8765)


if __name__ == "__main__":
    main()
