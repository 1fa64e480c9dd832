# Core module - shared components of the price tracker bot
# Contains: config, models, storage, notifier, tracker, scheduler, bot

from .config import BotConfig, load_config
from .models import ResolvedProduct, TrackedProduct, UserRecord
from .storage import UserStorage
from .notifier import TelegramNotifier
from .tracker import PriceTracker, interval_to_cron
from .scheduler import PriceCheckScheduler
from .bot import PriceBot

__all__ = [
    'BotConfig',
    'load_config',
    'ResolvedProduct',
    'TrackedProduct',
    'UserRecord',
    'UserStorage',
    'TelegramNotifier',
    'PriceTracker',
    'interval_to_cron',
    'PriceCheckScheduler',
    'PriceBot',
]
