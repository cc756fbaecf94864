"""
Run the ordering API with uvicorn.

Example:
  python -m apps.tableorder
"""
import os

import uvicorn


def main() -> None:
    reload = os.getenv("TABLEORDER_RELOAD", "false").lower() == "true"
    host = os.getenv("TABLEORDER_HOST", "0.0.0.0")
    port = int(os.getenv("TABLEORDER_PORT", "8000"))
    uvicorn.run(
        "apps.tableorder.app.main:app",
        host=host,
        port=port,
        reload=reload,
        reload_dirs=["apps"] if reload else None,
    )


if __name__ == "__main__":
    main()
