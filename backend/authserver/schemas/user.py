"""User schemas"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional
from enum import Enum


class UserRole(str, Enum):
    """User role enumeration"""
    ADMIN = "admin"
    USER = "user"


class UserCreate(BaseModel):
    """User creation schema (seeding)"""
    username: str = Field(..., min_length=3, max_length=255)
    name: Optional[str] = None
    email: Optional[str] = None
    email_verified: bool = False
    company: Optional[str] = None
    job_title: Optional[str] = None
    role: UserRole = UserRole.USER

    @field_validator('username')
    @classmethod
    def normalize_username(cls, v):
        return v.strip().lower()
