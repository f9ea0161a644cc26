"""Pydantic schemas for authentication."""

from uuid import UUID

from pydantic import BaseModel, Field

from .permissions import UserRole


class AuthenticatedUser(BaseModel):
    """User identity carried by a verified access token."""

    id: UUID = Field(..., description="User UUID (token subject)")
    email: str = Field(default="", description="User email")
    role: UserRole = Field(default=UserRole.STUDENT, description="User role")
