"""
Daily balance snapshot.

Once per UTC day, records every follower's total quote balance. On the
first day of a quarter the snapshot also becomes the quarter's start
equity; on the last day, its end equity.
"""

from copytrader.billing.quarters import is_quarter_end_day, is_quarter_start_day, quarter_for
from copytrader.data.exchange_client import open_client
from copytrader.domain.protocols import ExchangeFactory
from copytrader.monitoring.logger import get_logger
from copytrader.storage import repository
from copytrader.utils.clock import Clock, utc_now
from copytrader.utils.secret_manager import CredentialStore

logger = get_logger(__name__)

CONFIG_KEY = "last_balance_snapshot"


class BalanceSnapshotJob:

    def __init__(
        self,
        exchange_factory: ExchangeFactory,
        credentials: CredentialStore,
        quote_currency: str = "USDT",
        clock: Clock = utc_now,
    ):
        self.exchange_factory = exchange_factory
        self.credentials = credentials
        self.quote_currency = quote_currency
        self.clock = clock

    def should_run(self) -> bool:
        return repository.get_system_config(CONFIG_KEY) != self.clock().date().isoformat()

    async def run(self) -> int:
        """Snapshot every follower with API keys. Returns the number captured."""
        now = self.clock()
        today = now.date()
        quarter = quarter_for(today)
        followers = repository.get_followers_with_credentials()
        logger.info("BALANCE_SNAPSHOT_START", day=today.isoformat(), followers=len(followers))

        succeeded = 0
        failed = 0
        for follower in followers:
            try:
                creds = self.credentials.for_user(follower)
                async with open_client(self.exchange_factory, creds) as client:
                    balance = await client.fetch_balance(self.quote_currency)

                repository.upsert_balance_snapshot(follower.id, today, balance.total)
                if is_quarter_start_day(today):
                    repository.upsert_quarter_equity(follower.id, quarter.label, start_equity=balance.total)
                if is_quarter_end_day(today):
                    repository.upsert_quarter_equity(follower.id, quarter.label, end_equity=balance.total)

                succeeded += 1
                logger.info("Balance snapshot", follower_id=follower.id, total=str(balance.total))
            except Exception as e:
                failed += 1
                logger.error("Balance snapshot failed", follower_id=follower.id, error=str(e))

        repository.set_system_config(CONFIG_KEY, today.isoformat(), now)
        logger.info("BALANCE_SNAPSHOT_DONE", succeeded=succeeded, failed=failed)
        return succeeded
