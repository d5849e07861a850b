class BalanceError(Exception):
    """Base balance store error."""

    def __init__(self, msg: str = "", **ctx):
        super().__init__(msg)
        self.msg = msg
        self.ctx = ctx

    @property
    def user_id(self):
        return self.ctx.get("user_id")

    @property
    def currency(self):
        return self.ctx.get("currency")

    def __str__(self):
        base = self.msg or self.__class__.__name__
        if self.ctx:
            details = ", ".join(f"{k}={v}" for k, v in self.ctx.items())
            return f"{base} [{details}]"
        return base


class StorageUnavailable(BalanceError):
    """Engine unreachable or timed out. Retryable."""


class ConcurrentUpdateConflict(BalanceError):
    """Deadlock, lock wait timeout or a lost race creating the row."""


class CorruptBalanceData(BalanceError):
    """Stored balances are not a currency -> number object."""


class InsufficientFunds(BalanceError):
    """Debit would leave a negative amount while negatives are disallowed."""


class UnknownUser(BalanceError):
    """Mutation on a user without an account while auto-create is off."""


class UserAlreadyExists(BalanceError):
    pass
