"""Domain errors for the billing engine.

Each error carries a stable ``code`` and the HTTP status the API reports it with.
Webhook-only conditions (``UnrecognizedReference``, ``MissingMetadata``) are
acknowledged by the reconciler and never reach the client as failures.
"""

from __future__ import annotations


class BillingError(Exception):
    code = "BILLING_ERROR"
    status_code = 400

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class InvalidSignature(BillingError):
    code = "INVALID_SIGNATURE"
    status_code = 401


class UnrecognizedReference(BillingError):
    code = "UNRECOGNIZED_REFERENCE"
    status_code = 200


class MissingMetadata(BillingError):
    code = "MISSING_METADATA"
    status_code = 200


class SubscriptionNotFound(BillingError):
    code = "SUBSCRIPTION_NOT_FOUND"
    status_code = 404


class InvalidProrationWindow(BillingError):
    code = "INVALID_PRORATION_WINDOW"
    status_code = 422


class IneligibleForUpgrade(BillingError):
    code = "INELIGIBLE_FOR_UPGRADE"
    status_code = 422


class RetentionNotApplicable(BillingError):
    code = "RETENTION_NOT_APPLICABLE"
    status_code = 409


class JobAlreadyRunning(BillingError):
    code = "JOB_ALREADY_RUNNING"
    status_code = 409


class InvalidStateTransition(BillingError):
    code = "INVALID_STATE_TRANSITION"
    status_code = 409


class PendingTierChangeExists(BillingError):
    code = "PENDING_TIER_CHANGE_EXISTS"
    status_code = 409


class TierNotFound(BillingError):
    code = "TIER_NOT_FOUND"
    status_code = 404


class AddonNotFound(BillingError):
    code = "ADDON_NOT_FOUND"
    status_code = 404


class PaymentNotFound(BillingError):
    code = "PAYMENT_NOT_FOUND"
    status_code = 404


class JobNotFound(BillingError):
    code = "JOB_NOT_FOUND"
    status_code = 404


class ExecutionNotFound(BillingError):
    code = "EXECUTION_NOT_FOUND"
    status_code = 404


class InvalidPartnershipCode(BillingError):
    code = "INVALID_PARTNERSHIP_CODE"
    status_code = 400


class PermissionDenied(BillingError):
    code = "PERMISSION_DENIED"
    status_code = 403
