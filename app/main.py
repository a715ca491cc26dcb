import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.errors import PartialSyncError, WorkflowError
from app.logging_config import configure_logging
from app.routers import change_requests, management
from app.security.sessions import install_auth_session_middleware

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title='Maritime Change Request Portal')

install_auth_session_middleware(app)

app.include_router(change_requests.router)
app.include_router(management.router)


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    if not isinstance(exc, PartialSyncError):
        logger.info(
            'Workflow request refused: %s',
            exc,
            extra={'request_number': exc.request_number, 'action': exc.action},
        )
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.get('/health')
def health() -> dict:
    return {'status': 'ok'}
