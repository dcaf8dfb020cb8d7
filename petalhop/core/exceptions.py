"""
Error taxonomy for the hub core.

Failures are scoped to one peer, one forward row or one registration
attempt; callers contain them and carry on with sibling work.
"""


class HubError(Exception):
    """Base class for hub errors"""

    error_code = "HUB_ERROR"


class ValidationError(HubError):
    """Malformed peer/forward field or request payload"""

    error_code = "VALIDATION_ERROR"


class PolicyRowInvalid(ValidationError):
    """Forward row that cannot be rendered into the ruleset"""

    error_code = "POLICY_ROW_INVALID"

    def __init__(self, forward_id, reason: str):
        super().__init__(f"forward {forward_id}: {reason}")
        self.forward_id = forward_id
        self.reason = reason


class AuthError(HubError):
    """Unknown/stale setup token or unknown public key"""

    error_code = "UNAUTHORIZED"


class ConflictError(AuthError):
    """Peer already active with a different public key"""

    error_code = "CONFLICT"


class TransientDriverError(HubError):
    """Tunnel driver query or mutation failed (interface absent or down)"""

    error_code = "DRIVER_UNAVAILABLE"


class PersistenceError(HubError):
    """Store write failed for one unit of work"""

    error_code = "PERSISTENCE_ERROR"


class RuleApplyError(HubError):
    """Firewall loader rejected the ruleset"""

    error_code = "RULE_APPLY_FAILED"
