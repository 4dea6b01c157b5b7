"""
Exception types for the CampRush registration engine
"""
from typing import Optional


class CampRushError(Exception):
    """Base class for engine errors"""
    pass


class ClockSyncError(CampRushError):
    """Raised when a clock sync probe cannot produce a drift estimate"""
    pass


class InvalidTransitionError(CampRushError):
    """Raised when a record is moved out of a terminal state"""
    pass


class AttemptInProgressError(CampRushError):
    """Raised when a new attempt would overlap a non-terminal one"""

    def __init__(self, plan_id: str, attempt_number: int, message: Optional[str] = None):
        super().__init__(
            message or f"Plan {plan_id} still has attempt #{attempt_number} in progress"
        )
        self.plan_id = plan_id
        self.attempt_number = attempt_number


class DuplicateSubmissionError(CampRushError):
    """Raised when a nonce that already produced a confirmation is reused"""

    def __init__(self, nonce: str, confirmation_id: Optional[str] = None):
        super().__init__(f"Submission {nonce} already confirmed ({confirmation_id})")
        self.nonce = nonce
        self.confirmation_id = confirmation_id


class DetectionTimeout(CampRushError):
    """Raised when polling never observes the registration window opening"""
    pass


class StoreError(CampRushError):
    """Raised by data stores when a read or write fails"""
    pass
