from __future__ import annotations
import os
import uvicorn
from batchwork import ProcessRegistry, create_app
from batchwork.logging_utils import configure_logging

# configure logging so health-check thread and worker logs actually appear
configure_logging()

registry = ProcessRegistry.from_settings()
app = create_app(registry=registry)


def run_server() -> None:
    """Start the FastAPI server via Uvicorn.

    Returns:
        None.
    """
    uvicorn.run(
        "main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=False,
    )


if __name__ == "__main__":
    run_server()
