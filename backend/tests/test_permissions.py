import pytest

from app.core.errors import PermissionDenied
from app.core.permissions import (
    BILLING_MANAGE,
    BILLING_VIEW,
    OPERATION_CAPABILITIES,
    PLATFORM_MANAGE_JOBS,
    PLATFORM_VIEW_JOBS,
    Operator,
    authorize,
    required_capability,
)


def test_operator_without_capability_is_denied():
    operator = Operator(user_id="u1", capabilities=frozenset({PLATFORM_VIEW_JOBS}))
    with pytest.raises(PermissionDenied) as denied:
        authorize(operator, "jobs.trigger")
    assert denied.value.context["operation"] == "jobs.trigger"


def test_manage_capability_implies_view():
    jobs_admin = Operator(user_id="u1", capabilities=frozenset({PLATFORM_MANAGE_JOBS}))
    assert authorize(jobs_admin, "jobs.list") is jobs_admin
    treasurer = Operator(user_id="u2", church_id="c1", capabilities=frozenset({BILLING_MANAGE}))
    assert authorize(treasurer, "tier_change.preview") is treasurer


def test_view_capability_does_not_imply_manage():
    viewer = Operator(user_id="u3", church_id="c1", capabilities=frozenset({BILLING_VIEW}))
    with pytest.raises(PermissionDenied):
        authorize(viewer, "subscription.cancel")


def test_unknown_operation_is_a_programming_error():
    with pytest.raises(KeyError):
        required_capability("jobs.delete_everything")


def test_platform_operations_never_need_church_capabilities():
    for operation, capability in OPERATION_CAPABILITIES.items():
        if operation.startswith(("jobs.", "retention.", "partnership_codes.")):
            assert capability.startswith("PLATFORM_"), operation
