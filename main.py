"""Process entry point: ``uvicorn main:app`` or ``python main.py``."""

import os

import uvicorn

from sunrise.api.app import create_app

app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("APP_ENV", "development") == "development",
    )
