"""
Request audit logging.

Each endpoint that talks to the workflow (or reads its history) records one
RequestLog row per call, whatever the outcome.
"""
# stdlib imports
import logging
import time

# third-party imports
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

# local imports
import db_utils
from models import RequestLog


logger = logging.getLogger(__name__)


def elapsed_ms(started_at: float) -> int:
    """Milliseconds since a time.perf_counter() reading."""
    return int((time.perf_counter() - started_at) * 1000)


def log_request(
    # required params first
    endpoint: str,
    model_id: str,
    response_status: int,
    response_time_ms: int,
    # optional params last
    user_id: str | None = None,
    aspect_ratio_id: str | None = None,
    input_image_count: int = 0,
    fal_request_id: str | None = None,
    request_payload_summary: dict | None = None,
    db_engine: Engine | None = None,
) -> None:
    """
    Persist a RequestLog row in its own session.

    A separate session keeps the audit row independent of whatever the
    request's session did (including a rollback). Failures are logged and
    never raised, so logging can't change the response.
    """
    entry = RequestLog(
        user_id=user_id,
        endpoint=endpoint,
        model_id=model_id,
        aspect_ratio_id=aspect_ratio_id,
        response_status=response_status,
        response_time_ms=response_time_ms,
        fal_request_id=fal_request_id,
        input_image_count=input_image_count,
        request_payload_summary=request_payload_summary or {},
    )

    try:
        with Session(db_engine or db_utils.engine) as log_session:
            log_session.add(entry)
            log_session.commit()
    except SQLAlchemyError as e:
        logger.error(f"Failed to persist request log for {endpoint}: {str(e)}")
