"""FastAPI dependencies for the monitoring manager and operator sessions."""

from typing import Annotated

from fastapi import Depends, Header, Request

from ..constants import CONSTANTS
from ..core.collaborators import Operator, SessionLookup
from ..monitoring.manager import MonitoringManager


def get_monitoring_manager(request: Request) -> MonitoringManager:
    """Dependency to get the monitoring manager bound to the application.

    Returns:
        MonitoringManager: Manager serving this application
    """
    return request.app.state.monitoring_manager


def get_session_lookup(request: Request) -> SessionLookup:
    return request.app.state.session_lookup


async def get_current_operator(
    lookup: Annotated[SessionLookup, Depends(get_session_lookup)],
    session_token: Annotated[str | None, Header(alias=CONSTANTS.SESSION_TOKEN_HEADER)] = None,
) -> Operator | None:
    """Resolve the session token header to an operator, if any."""
    if not session_token:
        return None
    return await lookup.get_operator(session_token)


# Type annotations for dependencies
Manager = Annotated[MonitoringManager, Depends(get_monitoring_manager)]
CurrentOperator = Annotated[Operator | None, Depends(get_current_operator)]
