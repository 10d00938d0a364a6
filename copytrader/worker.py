"""
Worker composition root.

Startup order: resolve the leader -> reconcile missed leader orders ->
start scheduler tasks -> stream leader orders until shutdown.
"""
import asyncio
import signal
from decimal import Decimal
from typing import Optional, Tuple

from copytrader.config.config import Config
from copytrader.data.exchange_client import ccxt_factory
from copytrader.domain.models import ExchangeCredentials, User
from copytrader.domain.protocols import ExchangeFactory
from copytrader.exceptions import StartupError
from copytrader.execution.fee_calculator import FeeCalculator
from copytrader.execution.pending_trades import PendingTradeService
from copytrader.execution.position_ledger import PositionLedger
from copytrader.execution.trade_copier import TradeCopier
from copytrader.jobs.balance_snapshot import BalanceSnapshotJob
from copytrader.jobs.invoice_generator import InvoiceGenerator
from copytrader.jobs.transfer_tracker import TransferTracker
from copytrader.live.leader_watcher import LeaderWatcher
from copytrader.live.scheduler import Scheduler
from copytrader.monitoring.logger import get_logger
from copytrader.reconciliation.reconciler import Reconciler
from copytrader.storage import repository
from copytrader.utils.clock import Clock, utc_now
from copytrader.utils.secret_manager import CredentialCipher, CredentialStore

logger = get_logger(__name__)


def build_credential_store(config: Config) -> CredentialStore:
    if config.security.encryption_key:
        return CredentialStore(CredentialCipher(config.security.encryption_key))
    return CredentialStore.from_env()


class Worker:

    def __init__(
        self,
        config: Config,
        exchange_factory: Optional[ExchangeFactory] = None,
        credentials: Optional[CredentialStore] = None,
        clock: Clock = utc_now,
    ):
        self.config = config
        self.exchange_factory = exchange_factory or ccxt_factory(config.exchange)
        self.credentials = credentials or build_credential_store(config)
        self.clock = clock

        quote = config.exchange.quote_currency
        self.ledger = PositionLedger(clock=clock)
        self.fee_calculator = FeeCalculator(Decimal(str(config.copy_trading.trade_fee_percent)))
        self.copier = TradeCopier(
            exchange_factory=self.exchange_factory,
            credentials=self.credentials,
            ledger=self.ledger,
            fee_calculator=self.fee_calculator,
            config=config.copy_trading,
            quote_currency=quote,
            clock=clock,
        )
        self.reconciler = Reconciler(self.exchange_factory, self.ledger, config.reconciliation, clock=clock)
        self.pending_trades = PendingTradeService(self.copier, clock=clock)
        self.balance_snapshots = BalanceSnapshotJob(self.exchange_factory, self.credentials, quote, clock=clock)
        self.transfer_tracker = TransferTracker(
            self.exchange_factory, self.credentials, config.scheduler.transfer_lookback_days, clock=clock,
        )
        self.invoice_generator = InvoiceGenerator(config.billing, clock=clock)
        self.scheduler = Scheduler(
            jobs=[self.balance_snapshots, self.transfer_tracker, self.invoice_generator],
            pending_trades=self.pending_trades,
            config=config.scheduler,
            clock=clock,
        )
        self.watcher: Optional[LeaderWatcher] = None
        self._stopping = False

    def resolve_leader(self) -> Tuple[User, ExchangeCredentials]:
        """
        Raises:
            StartupError: No leader account, or the leader has no API keys
        """
        leader = repository.get_leader()
        if leader is None:
            raise StartupError("No leader user found. Create a leader account first.")
        credentials = self.credentials.for_user(leader)
        if credentials is None:
            raise StartupError("Leader has no API keys configured.")
        return leader, credentials

    async def start(self) -> None:
        logger.info("WORKER_START", environment=self.config.environment)
        leader, credentials = self.resolve_leader()
        logger.info("Leader found", leader_id=leader.id, name=leader.name)

        if self.config.reconciliation.reconcile_enabled:
            await self.reconciler.reconcile(leader, credentials)

        self.scheduler.start()
        self.watcher = LeaderWatcher(
            leader=leader,
            credentials=credentials,
            exchange_factory=self.exchange_factory,
            copier=self.copier,
            ledger=self.ledger,
            config=self.config.watcher,
            clock=self.clock,
        )
        await self.watcher.start()

    async def shutdown(self) -> None:
        if self._stopping:
            return
        self._stopping = True
        logger.info("WORKER_SHUTDOWN")
        if self.watcher is not None:
            await self.watcher.stop()
        await self.scheduler.stop()
        logger.info("Shutdown complete")

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, lambda: asyncio.create_task(self.shutdown()))
            except NotImplementedError:
                # Windows event loops do not support signal handlers
                pass


async def run_worker(config: Config) -> None:
    worker = Worker(config)
    worker.install_signal_handlers()
    try:
        await worker.start()
    finally:
        await worker.shutdown()
