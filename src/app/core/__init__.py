"""Core package (kept light)

``core.config`` is not imported here: building ``Settings`` needs the
Supabase environment, and services must stay importable without it.
"""
from .responses import (
    APIResponse, success_response,
    BusinessException, AuthenticationException, ValidationException,
)

__all__ = [
    'APIResponse',
    'success_response',
    'BusinessException',
    'AuthenticationException',
    'ValidationException',
]
