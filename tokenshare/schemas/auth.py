"""Auth schemas: CurrentUser."""

import uuid

from pydantic import BaseModel

from tokenshare.models.enums import UserRole


class CurrentUser(BaseModel):
    """Lightweight user context extracted from the bearer JWT."""

    user_id: uuid.UUID
    role: UserRole
