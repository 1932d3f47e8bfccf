"""
Business constants for entitlement reconciliation.

These values are stable across environments and do not need env-var
overrides. For operational parameters (timeouts, concurrency, weights), see
config.py.
"""

API_TITLE = "Entitlement Reconciler"
API_VERSION = "1.0.0"

# --- Owned entities reassigned when duplicates merge into a canonical identity ---
# (table, owner field). Fields ending in "_email" hold the owner's email,
# everything else holds the owner's identity id.
OWNED_RECORD_FIELDS: list[tuple[str, str]] = [
    ("pipes", "user_id"),
    ("tobacco_blends", "user_id"),
    ("smoking_logs", "user_id"),
    ("cellar_logs", "user_id"),
    ("maintenance_logs", "user_id"),
    ("subscriptions", "user_id"),
    ("tobacco_containers", "user_email"),
    ("user_connections", "follower_email"),
    ("user_connections", "following_email"),
    ("comments", "commenter_email"),
]

# --- Plan labels shown by entitlement checks ---
PLAN_LABELS = {
    "free": "Free",
    "premium": "Premium",
    "pro": "Pro",
}

# --- Manual (admin-granted) subscriptions ---
MANUAL_SUBSCRIPTION_PREFIX = "manual_"
MANUAL_GRANT_PERIOD_DAYS = 30

# Placeholder id for mobile purchases reported without a transaction id
MOBILE_UNVERIFIED_PREFIX = "apple_unverified_"

# Stripe customer ids always carry this prefix
STRIPE_CUSTOMER_PREFIX = "cus_"
