"""Premium subscriptions and their billing cycles.

``SubscriptionService`` lives in :mod:`.service`; import it from there.
"""

from .cycles import BillingCycle, add_months, current_cycle, is_date_in_cycle, next_cycle  # noqa: F401
