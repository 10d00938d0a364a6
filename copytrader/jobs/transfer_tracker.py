"""
Daily deposit/withdrawal tracking.

Re-fetches a rolling window of transfers per follower; already-recorded
transaction ids are dropped by the unique constraint.
"""
from datetime import datetime, timedelta, timezone

from copytrader.data.exchange_client import open_client
from copytrader.domain.models import Transfer
from copytrader.domain.protocols import ExchangeFactory
from copytrader.monitoring.logger import get_logger
from copytrader.storage import repository
from copytrader.utils.clock import Clock, epoch_ms, utc_now
from copytrader.utils.secret_manager import CredentialStore

logger = get_logger(__name__)

CONFIG_KEY = "last_transfer_track"


class TransferTracker:

    def __init__(
        self,
        exchange_factory: ExchangeFactory,
        credentials: CredentialStore,
        lookback_days: int = 30,
        clock: Clock = utc_now,
    ):
        self.exchange_factory = exchange_factory
        self.credentials = credentials
        self.lookback_days = lookback_days
        self.clock = clock

    def should_run(self) -> bool:
        return repository.get_system_config(CONFIG_KEY) != self.clock().date().isoformat()

    async def run(self) -> int:
        """Returns the number of newly recorded transfers."""
        now = self.clock()
        since_ms = epoch_ms(now - timedelta(days=self.lookback_days))
        followers = repository.get_followers_with_credentials()
        logger.info("TRANSFER_TRACK_START", followers=len(followers), lookback_days=self.lookback_days)

        new_records = 0
        for follower in followers:
            try:
                creds = self.credentials.for_user(follower)
                async with open_client(self.exchange_factory, creds) as client:
                    deposits = await client.fetch_deposits(since_ms)
                    withdrawals = await client.fetch_withdrawals(since_ms)

                for transfer in list(deposits) + list(withdrawals):
                    if self._store(follower.id, transfer):
                        new_records += 1

                logger.info(
                    "Transfers fetched",
                    follower_id=follower.id,
                    deposits=len(deposits),
                    withdrawals=len(withdrawals),
                )
            except Exception as e:
                logger.error("Transfer tracking failed", follower_id=follower.id, error=str(e))

        repository.set_system_config(CONFIG_KEY, now.date().isoformat(), now)
        logger.info("TRANSFER_TRACK_DONE", new_records=new_records)
        return new_records

    @staticmethod
    def _store(user_id: int, transfer: Transfer) -> bool:
        return repository.insert_transfer(
            user_id=user_id,
            transfer_type=transfer.kind,
            amount=transfer.amount,
            coin=transfer.currency,
            exchange_tx_id=transfer.txid,
            occurred_at=datetime.fromtimestamp(transfer.timestamp / 1000, tz=timezone.utc),
        )
