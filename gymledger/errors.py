"""Typed failures raised by the membership, ledger and session models."""


class GymLedgerError(Exception):
    """Base class for domain errors"""
    status_code = 400

    def to_dict(self):
        return {'error': type(self).__name__, 'message': str(self)}


class InvalidPlan(GymLedgerError):
    status_code = 400

    def __init__(self, value):
        self.value = value
        super().__init__(f"Unknown membership plan: {value!r}")

    def to_dict(self):
        data = super().to_dict()
        data['plan'] = self.value
        return data


class InsufficientBalance(GymLedgerError):
    status_code = 422

    def __init__(self, attempted, balance):
        self.attempted = attempted
        self.balance = balance
        super().__init__(
            f"Insufficient balance: cannot deduct {attempted} from {balance}"
        )

    def to_dict(self):
        data = super().to_dict()
        data['attempted'] = float(self.attempted)
        data['balance'] = float(self.balance)
        return data


class ConcurrentModification(GymLedgerError):
    """Raised when SQLite reports the database as locked or busy."""
    status_code = 503


class ValidationError(GymLedgerError):
    status_code = 400


class NotFound(GymLedgerError):
    status_code = 404

    def __init__(self, what):
        super().__init__(f"{what} not found")
