from __future__ import annotations

import os

from fastapi import APIRouter, Request

router = APIRouter()


def _get_commit_sha() -> str | None:
    for key in ("RAILWAY_GIT_COMMIT_SHA", "GITHUB_SHA", "COMMIT_SHA", "GIT_SHA"):
        value = os.getenv(key)
        if value:
            return value
    return None


@router.get("/healthz")
def healthz(request: Request):
    runtime = request.app.state.runtime
    return {
        "ok": True,
        "service": "glowup-agent",
        "commit_sha": _get_commit_sha(),
        "environment": os.getenv("ENVIRONMENT"),
        "history_store_backend": runtime.history_backend,
        "datastore_backend": runtime.datastore_kind,
        "completion_provider_configured": runtime.provider is not None,
        "cache_entries": len(runtime.cache),
    }
