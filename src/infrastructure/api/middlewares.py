from __future__ import annotations

import os

from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware


def add_default_middlewares(app: FastAPI) -> None:
    # The job board frontend calls /checkout from the browser.
    # Webhooks are server-to-server and unaffected by CORS.
    env = os.getenv("ENV", "development")

    if env in ("development", "staging", "test"):
        allowed_origins = [
            "http://localhost:3000",
            "http://localhost:5173",  # Vite default
            "http://127.0.0.1:3000",
            "http://127.0.0.1:5173",
        ]
    else:
        raw = os.getenv("ALLOWED_ORIGINS", "*")
        allowed_origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials="*" not in allowed_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
