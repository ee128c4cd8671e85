import enum

from gymledger.errors import InvalidPlan


class BillingMode(str, enum.Enum):
    FLAT_SUBSCRIPTION = "flat_subscription"
    PAY_AS_YOU_GO = "pay_as_you_go"


class MembershipPlan(str, enum.Enum):
    """Compiled-in plan catalog.

    Each plan carries its length in whole months (0 for Daily, which means
    a same-day window with no forward-dated expiry) and its billing mode.
    """
    DAILY = "Daily"
    MONTHLY = "Monthly"
    QUARTERLY = "Quarterly"
    SEMI_ANNUAL = "Semi-Annual"
    ANNUAL = "Annual"

    @property
    def months(self):
        return _CATALOG[self][0]

    @property
    def billing_mode(self):
        return _CATALOG[self][1]

    @property
    def is_pay_as_you_go(self):
        return self.billing_mode is BillingMode.PAY_AS_YOU_GO

    @classmethod
    def values(cls):
        return [plan.value for plan in cls]

    @classmethod
    def from_value(cls, value):
        """Parse a plan identifier, rejecting anything outside the catalog."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise InvalidPlan(value) from None


_CATALOG = {
    MembershipPlan.DAILY: (0, BillingMode.PAY_AS_YOU_GO),
    MembershipPlan.MONTHLY: (1, BillingMode.FLAT_SUBSCRIPTION),
    MembershipPlan.QUARTERLY: (3, BillingMode.FLAT_SUBSCRIPTION),
    MembershipPlan.SEMI_ANNUAL: (6, BillingMode.FLAT_SUBSCRIPTION),
    MembershipPlan.ANNUAL: (12, BillingMode.FLAT_SUBSCRIPTION),
}

# Every plan must have a catalog row
assert set(_CATALOG) == set(MembershipPlan)
