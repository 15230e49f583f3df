# Shared billing utilities package
from .constants import Tier
from .errors import BillingError
from .response_utils import error_response, success_response

__all__ = [
    "Tier",
    "BillingError",
    "error_response",
    "success_response",
]
