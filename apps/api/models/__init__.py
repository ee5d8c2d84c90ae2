"""Models package."""

from .user import User
from .credit_ledger import CreditLedger
from .transaction import PaymentTransaction
from .subscription import Subscription
from .reading import Reading
from .error_log import ErrorLog
