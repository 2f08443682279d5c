"""
Circuit Hub - Error Responses

Maps engine error categories to HTTP status codes.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from services.circuit.errors import ErrorCategory, WorkflowError

logger = logging.getLogger(__name__)

STATUS_CODES = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.AUTHORIZATION: 403,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.STATE_CONFLICT: 409,
    ErrorCategory.STRUCTURAL: 409,
}


async def workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    status_code = STATUS_CODES.get(exc.category, 400)
    if status_code >= 409:
        logger.info("%s %s rejected: %s %s", request.method, request.url.path, type(exc).__name__, exc.context)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(WorkflowError, workflow_error_handler)
