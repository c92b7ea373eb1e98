from functools import lru_cache

from .services.account_guard import AccountGuard
from .services.account_store import build_account_store
from .services.mail_delivery_service import MailDeliveryService
from .services.token_service import TokenService


@lru_cache(maxsize=1)
def get_account_guard() -> AccountGuard:
    return AccountGuard(
        store=build_account_store(),
        mailer=MailDeliveryService(),
        tokens=TokenService(),
    )
