"""Exceptions raised by the reconciliation core and mapped to HTTP in main.py."""

from typing import Optional


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AppError):
    """Malformed or inconsistent input (400)."""

    status_code = 400


class UnknownPlanError(ValidationError):
    def __init__(self, plan_type: str, valid_keys):
        super().__init__(
            f"Unknown plan '{plan_type}'. Valid plans: {', '.join(valid_keys)}"
        )
        self.plan_type = plan_type


class LeadNotFound(AppError):
    status_code = 404

    def __init__(self, lead_id: str):
        super().__init__("Lead not found")
        self.lead_id = lead_id


class ExternalServiceError(AppError):
    """An identity, payment or entitlement provider call failed (502)."""

    status_code = 502

    def __init__(self, service: str, message: str, upstream_status: Optional[int] = None):
        super().__init__(f"{service}: {message}")
        self.service = service
        self.upstream_status = upstream_status


class WebhookVerificationError(AppError):
    status_code = 401

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(message)
