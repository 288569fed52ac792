from __future__ import annotations

import os

import uvicorn


def main() -> None:
    host = os.getenv("CADENCE_HOST", "0.0.0.0")
    port = int(os.getenv("CADENCE_PORT", "8080"))
    uvicorn.run("cadence.web_app:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
