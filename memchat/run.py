"""Backend launcher: ``python -m memchat.run`` or the ``memchat`` script."""
import os

import uvicorn


def main() -> None:
    uvicorn.run(
        "memchat.main:app",
        host=os.environ.get("MEMCHAT_HOST", "127.0.0.1"),
        port=int(os.environ.get("MEMCHAT_PORT", "8765")),
    )


if __name__ == "__main__":
    main()
