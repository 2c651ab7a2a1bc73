"""Models package."""

from .user import User
from .storage_account import StorageAccount
from .upload import Upload
from .storage_ledger import StorageLedgerEntry
from .purchase import Purchase
from .rate_limit_window import RateLimitWindow
from .daily_media_usage import DailyMediaUsage
from .account_status import AccountStatus
