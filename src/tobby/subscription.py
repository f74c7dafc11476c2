"""
Tobby - Subscriptions

Plan checks for premium features. Billing itself (checkout, webhooks) runs
on the payment provider; this module only reads the stored subscription row.

A user is premium when their subscription is 'active' on a plan other than
'free'. Free features are open to everyone, with or without a row.
"""

SUBSCRIPTION_STATUSES = ('free', 'active', 'canceled', 'past_due')

FREE_PLAN = 'free'

FREE_FEATURES = (
    'basic_dashboard',
    'receipt_tracking',
    'basic_filters',
)

PREMIUM_FEATURES = (
    'advanced_analytics',
    'export_data',
    'budget_alerts',
    'unlimited_receipts',
    'priority_support',
    'custom_categories',
)


def is_premium_user(subscription):
    """
    Check whether a subscription unlocks premium features.

    Args:
        subscription (dict | None): a user_subscriptions row, or None

    Returns:
        bool: True for an active subscription on a paid plan
    """
    if not subscription:
        return False
    return (subscription.get('subscription_status') == 'active'
            and subscription.get('plan_name') != FREE_PLAN)


def has_feature_access(subscription, feature_key):
    """Free features are always available; anything else needs premium."""
    if feature_key in FREE_FEATURES:
        return True
    return is_premium_user(subscription)


def feature_access(subscription):
    """Map every known feature key to whether the subscription can use it."""
    return {key: has_feature_access(subscription, key) for key in FREE_FEATURES + PREMIUM_FEATURES}
