"""Generic API response schemas"""

from pydantic import BaseModel
from typing import Optional, Any, Dict


class OAuthErrorResponse(BaseModel):
    """OAuth error body (RFC 6749 section 5.2)"""
    error: str
    error_description: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    timestamp: str
    readiness: Dict[str, Any]
