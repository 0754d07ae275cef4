from __future__ import annotations

from typing import Optional

from models import Actor, ApprovalPolicy

# Tolerance for comparing booking durations against the auto-approve threshold
DURATION_TOLERANCE_HOURS = 1e-12


class ApprovalPolicyEvaluator:
    """
    Decides how a resource's approval policy applies to an actor.

    The booking engine asks this object instead of reading the policy sets
    directly, so authorisation rules can change without touching the
    booking state machine.
    """

    def requires_review(self, policy: Optional[ApprovalPolicy]) -> bool:
        return policy is not None and policy.requires_approval

    def auto_approval_reason(
        self,
        policy: ApprovalPolicy,
        actor: Actor,
        duration_hours: float,
    ) -> Optional[str]:
        """Return why a booking is auto-approved, or None if it needs review."""
        email = actor.normalised_email
        if email is not None and email in policy.auto_approve_emails:
            return "Requester is on the auto-approve list"

        threshold = policy.auto_approve_duration_hours
        if threshold is not None and duration_hours <= threshold + DURATION_TOLERANCE_HOURS:
            return f"Duration within auto-approve limit of {threshold:g}h"

        return None

    def can_review(self, policy: Optional[ApprovalPolicy], actor: Actor) -> bool:
        # An empty approver list means any authenticated actor may review.
        if policy is None or not policy.approver_emails:
            return True
        return actor.normalised_email in policy.approver_emails
