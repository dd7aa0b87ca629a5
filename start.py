from __future__ import annotations

import os
from pathlib import Path
import sys

import uvicorn


REPO_DIR = Path(__file__).resolve().parent


def _server_options() -> dict:
    return {
        "host": (os.getenv("HOST") or "0.0.0.0").strip(),
        "port": int(os.environ.get("PORT") or "8080"),
        "workers": max(1, int(os.getenv("WEB_CONCURRENCY") or "1")),
        "log_level": (os.getenv("LOG_LEVEL") or "info").lower(),
        # Deployed behind the platform's TLS-terminating proxy.
        "proxy_headers": True,
        "forwarded_allow_ips": "*",
    }


def main() -> None:
    if str(REPO_DIR) not in sys.path:
        sys.path.insert(0, str(REPO_DIR))
    uvicorn.run("app.main:app", **_server_options())


if __name__ == "__main__":
    main()
