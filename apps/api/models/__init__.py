"""Models package."""

from .user import User
from .credit_account import CreditAccount
from .credit_transaction import CreditTransaction
from .search_session import SearchSession
from .field_rep_profile import FieldRepProfile
