# backend/sahayak/api/dependencies/auth.py
"""
Authentication and authorization dependencies.
"""

import logging

from fastapi import Depends, HTTPException, status

from ...auth import get_current_actor
from ...principal import Actor

logger = logging.getLogger(__name__)


async def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    """Allow only admin callers."""
    if not actor.is_admin:
        logger.warning("Admin-only endpoint called by %s (%s)", actor.id, actor.role.value)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return actor
