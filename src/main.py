"""
main.py

Entry point for the Field Operations Project & Inventory Management API.

Configures logging, wires the in-memory infrastructure into the FastAPI app
and starts uvicorn.

Usage
-----
    # Option 1 — run directly
    python main.py

    # Option 2 — run via uvicorn CLI (recommended for development)
    uvicorn main:app --reload --port 8000

    # Option 3 — custom host/port through the environment
    APP_HOST=127.0.0.1 APP_PORT=8080 python main.py

Once running, open your browser at:
    http://localhost:8000/docs      ← Swagger UI  (try every endpoint interactively)
    http://localhost:8000/redoc     ← ReDoc
    http://localhost:8000/health    ← liveness check
    http://localhost:8000/mcp       ← MCP server exposing the same operations

Quick-start walkthrough (use Swagger UI or curl)
-------------------------------------------------
0.  Start the server with APP_LOG_LEVEL=DEBUG and copy the development
    admin token printed at startup.  Send it as
    Authorization: Bearer <token>
1.  POST  /api/v1/users                      — register a project manager,
                                               a stock manager, a client and
                                               a technician
2.  POST  /api/v1/products                   — add stock to the catalogue
3.  POST  /api/v1/projects                   — create a project with a product
                                               list; the stock is reserved
4.  POST  /api/v1/tasks                      — create a task assigned to the
                                               technician
5.  POST  /api/v1/tasks/{id}/evidence        — attach proof-of-work images
6.  PATCH /api/v1/tasks/{id}/position        — move the task to "In Review"
7.  GET   /api/v1/projects/{id}/tasks        — view the board
8.  GET   /api/v1/notifications              — read your inbox
9.  GET   /api/v1/projects/{id}/allocations/verify — check the stock ledger

Live notifications are pushed on ws://localhost:8000/ws/notifications?token=<token>.

Authentication note
-------------------
Tokens are HS256 JWTs carrying "sub" (user id) and "role", signed with
APP_SECRET_KEY.  They are issued by the identity provider; this service
only verifies them.
"""

import uvicorn

from api import app  # noqa: F401  (imported for "main:app")
from config import configure_logging, settings


configure_logging()


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=True,          # auto-reload on file changes during development
        log_level=settings.log_level.lower(),
    )
