"""
JSON API for one agent.

    POST /tasks/send             message in, task out
    GET  /tasks/{task_id}        current task snapshot
    POST /tasks/{task_id}/cancel cancel a live task
    GET  /.well-known/agent.json name, role, extensions, operations

Requested extensions arrive in the ``X-A2A-Extensions`` header; the
activated subset is echoed back in the same header.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import FastAPI, Header, HTTPException, Request, Response

from .errors import TaskNotCancelable, TaskNotFound, ValidationError
from .message import Message
from .orchestrator import TaskOrchestrator
from .transport import EXTENSIONS_HEADER, format_extensions_header, parse_extensions_header


logger = logging.getLogger(__name__)


def create_app(orchestrator: TaskOrchestrator) -> FastAPI:
    app = FastAPI(title=orchestrator.name)
    app.state.orchestrator = orchestrator

    # Sync handlers run on the worker pool; orchestrator calls block.

    @app.post("/tasks/send")
    def send_task(
        body: dict[str, Any],
        response: Response,
        extensions: Optional[str] = Header(default=None, alias=EXTENSIONS_HEADER),
    ):
        try:
            message = Message.from_dict(body)
        except ValidationError as e:
            logger.info("Rejected malformed message: %s", e)
            raise HTTPException(status_code=400, detail=str(e)) from e
        result = orchestrator.handle(message, parse_extensions_header(extensions))
        response.headers[EXTENSIONS_HEADER] = format_extensions_header(result.activated_extensions)
        return result.to_dict()

    @app.get("/tasks/{task_id}")
    def get_task(task_id: str):
        try:
            return orchestrator.get_task(task_id).to_dict()
        except TaskNotFound as e:
            raise HTTPException(status_code=404, detail=str(e)) from e

    @app.post("/tasks/{task_id}/cancel")
    def cancel_task(task_id: str):
        try:
            return orchestrator.cancel(task_id).to_dict()
        except TaskNotFound as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        except TaskNotCancelable as e:
            raise HTTPException(status_code=409, detail=str(e)) from e

    @app.get("/.well-known/agent.json")
    def agent_card(request: Request):
        card = orchestrator.describe()
        card["url"] = str(request.base_url).rstrip("/")
        return card

    return app
