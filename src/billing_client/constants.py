"""Shared API constants for the billing dashboard backend."""

REST_URL = "https://billing.example.com"
SESSION_COOKIE_NAME = "sb_session"

DASHBOARD_PATH = "/dashboard"
LICENSES_PATH = "/licenses"
ADD_SITES_BATCH_PATH = "/add-sites-batch"
REMOVE_PENDING_SITE_PATH = "/remove-pending-site"
CREATE_CHECKOUT_PATH = "/create-checkout-from-pending"
REMOVE_SITE_PATH = "/remove-site"
ACTIVATE_LICENSE_PATH = "/activate-license"
DEACTIVATE_LICENSE_PATH = "/deactivate-license"
PURCHASE_QUANTITY_PATH = "/purchase-quantity"

DEFAULT_PAGE_SIZE = 100


def default_rest_base_url() -> str:
    """Return the default REST base URL of the billing API."""
    return REST_URL
