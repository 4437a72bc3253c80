"""HTTP routers and the helpers they share."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import HTTPException, Request

from ..agents.model import ModelProviderError
from ..conversations.escalation import EscalationPersistenceError
from ..conversations.repository import ConversationNotFoundError, MessageNotFoundError
from ..conversations.state import IllegalTransitionError
from ..engine import Engine

logger = logging.getLogger(__name__)

GENERIC_ERROR = "Something went wrong, please try again."


def get_engine(request: Request) -> Engine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not initialised")
    return engine


@contextmanager
def service_errors() -> Iterator[None]:
    """Translate domain errors into HTTP responses."""

    try:
        yield
    except (ConversationNotFoundError, MessageNotFoundError) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except IllegalTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except (ModelProviderError, EscalationPersistenceError) as exc:
        logger.warning("Turn failed: %s", exc)
        raise HTTPException(status_code=503, detail=GENERIC_ERROR) from exc
