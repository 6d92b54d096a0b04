"""Custom exception classes for the application"""

from typing import Optional, Dict, Any


class BaseAPIException(Exception):
    """Base exception for all API errors"""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


# Authentication Errors
class AuthenticationError(BaseAPIException):
    """Base authentication error"""
    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message, status_code=401)


class TokenExpiredError(AuthenticationError):
    """JWT token has expired"""
    def __init__(self):
        super().__init__("Token has expired")


class TokenInvalidError(AuthenticationError):
    """JWT token is invalid"""
    def __init__(self, message: str = "Invalid token"):
        super().__init__(message)


# Authorization Errors
class AuthorizationError(BaseAPIException):
    """Insufficient permissions"""
    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message, status_code=403)


# Resource Errors
class ResourceNotFoundError(BaseAPIException):
    """Resource not found"""
    def __init__(self, resource: str):
        super().__init__(f"{resource} not found", status_code=404)


class ResourceAlreadyExistsError(BaseAPIException):
    """Resource already exists"""
    def __init__(self, resource: str):
        super().__init__(f"{resource} already exists", status_code=409)


# Validation Errors
class ValidationError(BaseAPIException):
    """Validation error"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=422, details=details)


# System Errors
class SigningKeyUnavailableError(BaseAPIException):
    """No active signing key is loaded"""
    def __init__(self, message: str = "No active signing key available"):
        super().__init__(message, status_code=500)


# OAuth protocol errors (RFC 6749 section 5.2 / OIDC core section 3.1.2.6)
class OAuthError(BaseAPIException):
    """Error rendered as an OAuth `{error, error_description}` body"""

    error = "server_error"
    default_status = 400

    def __init__(
        self,
        description: Optional[str] = None,
        status_code: Optional[int] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.description = description
        self.headers = headers or {}
        super().__init__(
            description or self.error,
            status_code=status_code or self.default_status,
        )

    def to_dict(self) -> Dict[str, str]:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


class InvalidRequestError(OAuthError):
    error = "invalid_request"


class InvalidClientError(OAuthError):
    error = "invalid_client"
    default_status = 401

    def __init__(self, description: str = "Client authentication failed"):
        super().__init__(description, headers={"WWW-Authenticate": 'Basic realm="oauth"'})


class InvalidGrantError(OAuthError):
    error = "invalid_grant"


class UnauthorizedClientError(OAuthError):
    error = "unauthorized_client"


class UnsupportedGrantTypeError(OAuthError):
    error = "unsupported_grant_type"


class UnsupportedResponseTypeError(OAuthError):
    error = "unsupported_response_type"


class InvalidScopeError(OAuthError):
    error = "invalid_scope"


class AccessDeniedError(OAuthError):
    error = "access_denied"


class LoginRequiredError(OAuthError):
    error = "login_required"
    default_status = 401


class InvalidTokenError(OAuthError):
    error = "invalid_token"
    default_status = 401

    def __init__(self, description: str = "The access token is invalid"):
        super().__init__(
            description,
            headers={"WWW-Authenticate": f'Bearer error="invalid_token", error_description="{description}"'},
        )


class ServerError(OAuthError):
    error = "server_error"
    default_status = 500


class AuthorizationRedirectError(OAuthError):
    """
    Error delivered to the client through its (already verified) redirect URI.

    Wraps a protocol error together with the redirect target and the request
    `state` so the authorization endpoint can append them as query parameters.
    """

    def __init__(self, cause: OAuthError, redirect_uri: str, state: Optional[str] = None):
        self.error = cause.error
        self.redirect_uri = redirect_uri
        self.state = state
        super().__init__(cause.description, status_code=302)
