"""Error hierarchy for tenant-facing management operations."""
from __future__ import annotations


class ZapFlowError(Exception):
    """Base exception for all management operations."""

    status_code = 400

    def __init__(self, message: str, entity_id: str = ""):
        self.entity_id = entity_id
        super().__init__(message)


class NotFoundError(ZapFlowError):
    status_code = 404


class TenantMismatchError(ZapFlowError):
    status_code = 403


class InvalidTransitionError(ZapFlowError):
    status_code = 409


class ValidationError(ZapFlowError):
    status_code = 422
