from typing import Optional


class LedgerServiceError(Exception):
    pass


class NotFoundError(LedgerServiceError):
    pass


class UserNotFoundError(NotFoundError):
    def __init__(self, user_id: int):
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class InvitationNotFoundError(NotFoundError):
    pass


class RecordNotFoundError(NotFoundError):
    pass


class ResourceNotFoundError(NotFoundError):
    pass


class RuleNotFoundError(NotFoundError):
    def __init__(self, rule_key: str):
        super().__init__(f"Points rule {rule_key} not found")
        self.rule_key = rule_key


class InsufficientBalanceError(LedgerServiceError):
    def __init__(self, user_id: int, balance: int, required: int):
        super().__init__(
            f"User {user_id} has {balance} points, {required} required "
            f"(short by {required - balance})"
        )
        self.user_id = user_id
        self.balance = balance
        self.required = required


class AlreadyRewardedError(LedgerServiceError):
    pass


class RuleDisabledError(LedgerServiceError):
    def __init__(self, rule_key: str):
        super().__init__(f"Points rule {rule_key} is disabled")
        self.rule_key = rule_key


class ValidationError(LedgerServiceError):
    pass


# Invitation validation

class InvalidCodeError(LedgerServiceError):
    def __init__(self, code: str):
        super().__init__(f"Invite code {code} is not valid")
        self.code = code


class CodeExpiredError(LedgerServiceError):
    def __init__(self, code: str):
        super().__init__(f"Invite code {code} has expired")
        self.code = code


class CodeAlreadyUsedError(LedgerServiceError):
    def __init__(self, code: str):
        super().__init__(f"Invite code {code} has already been used")
        self.code = code


class DuplicateCodeError(LedgerServiceError):
    def __init__(self, code: str):
        super().__init__(f"Invite code {code} is already registered")
        self.code = code


class SelfReferralError(LedgerServiceError):
    pass


class AlreadyInvitedError(LedgerServiceError):
    def __init__(self, user_id: int, inviter_id: Optional[int] = None):
        super().__init__(f"User {user_id} was already invited by {inviter_id}")
        self.user_id = user_id
        self.inviter_id = inviter_id


class ReferralCycleError(LedgerServiceError):
    pass
