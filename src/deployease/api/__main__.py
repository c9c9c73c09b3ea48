"""Run the API with uvicorn: ``python -m deployease.api``."""

from __future__ import annotations

import os

import uvicorn

from deployease.api.app import create_app


def main() -> None:
    uvicorn.run(
        create_app(),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "3000")),
        log_config=None,
    )


if __name__ == "__main__":
    main()
