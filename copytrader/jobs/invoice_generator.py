"""
Quarterly invoice generation.

Runs on the 1st day of Jan/Apr/Jul/Oct for the quarter that just ended,
once per quarter (marker "last_invoice_generation"). Per follower with at
least one balance snapshot in the quarter:

    start/end equity  from the quarter equity row, else first/last snapshot
    net deposits/withdrawals  summed from transfer history within the quarter
    fee  = compute_quarter_fee(...)

One invoice per (follower, quarter); a re-run skips followers already
invoiced.
"""
import secrets
from datetime import datetime, time, timezone
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional

from sqlalchemy.exc import IntegrityError

from copytrader.billing.fee_brackets import compute_quarter_fee
from copytrader.billing.quarters import QuarterInfo, is_quarter_start_day, previous_quarter
from copytrader.config.config import BillingConfig
from copytrader.domain.models import Invoice, InvoiceStatus, TransferType, User
from copytrader.domain.protocols import Notifier
from copytrader.monitoring import notifications
from copytrader.monitoring.logger import get_logger
from copytrader.monitoring.mailer import send_invoice_email
from copytrader.storage import repository
from copytrader.utils.clock import Clock, utc_now

logger = get_logger(__name__)

CONFIG_KEY = "last_invoice_generation"

Mailer = Callable[[BillingConfig, str, str, Invoice], Awaitable[bool]]


def generate_payment_token() -> str:
    """32 random bytes as 64 hex chars."""
    return secrets.token_hex(32)


class InvoiceGenerator:

    def __init__(
        self,
        config: Optional[BillingConfig] = None,
        notifier: Notifier = notifications.create_notification,
        mailer: Mailer = send_invoice_email,
        clock: Clock = utc_now,
        token_factory: Callable[[], str] = generate_payment_token,
    ):
        self.config = config or BillingConfig()
        self.notify = notifier
        self.mailer = mailer
        self.clock = clock
        self.token_factory = token_factory
        self.min_invoice_amount = Decimal(str(self.config.min_invoice_amount))

    def should_run(self) -> bool:
        """Only on a quarter's first day, and only once for the quarter that just ended."""
        today = self.clock().date()
        if not is_quarter_start_day(today):
            return False
        target = previous_quarter(today)
        if repository.get_system_config(CONFIG_KEY) == target.label:
            logger.info("Invoices already generated", quarter=target.label)
            return False
        return True

    async def run(self, quarter: Optional[QuarterInfo] = None) -> List[Invoice]:
        """Generate invoices for `quarter` (default: the previous quarter)."""
        now = self.clock()
        quarter = quarter or previous_quarter(now.date())
        followers = repository.get_followers()
        logger.info(
            "INVOICE_GENERATION_START",
            quarter=quarter.label,
            start=quarter.start.isoformat(),
            end=quarter.end.isoformat(),
            days=quarter.total_days,
            followers=len(followers),
        )

        created: List[Invoice] = []
        skipped = 0
        errored = 0
        for follower in followers:
            try:
                invoice = await self.generate_for_follower(follower, quarter)
                if invoice is None:
                    skipped += 1
                else:
                    created.append(invoice)
            except Exception as e:
                errored += 1
                logger.error("Invoice generation failed", follower_id=follower.id, error=str(e))

        repository.set_system_config(CONFIG_KEY, quarter.label, now)
        logger.info(
            "INVOICE_GENERATION_DONE",
            quarter=quarter.label,
            generated=len(created),
            skipped=skipped,
            errors=errored,
        )
        return created

    async def generate_for_follower(self, follower: User, quarter: QuarterInfo) -> Optional[Invoice]:
        if repository.invoice_exists(follower.id, quarter.label):
            return None

        snapshots = repository.get_balance_snapshots(follower.id, quarter.start, quarter.end)
        if not snapshots:
            logger.info("No snapshots in quarter, skipping", follower_id=follower.id, quarter=quarter.label)
            return None

        days_active = len(snapshots)
        avg_balance = sum((s.balance for s in snapshots), Decimal("0")) / days_active

        equity = repository.get_quarter_equity(follower.id, quarter.label)
        start_equity = snapshots[0].balance
        end_equity = snapshots[-1].balance
        if equity is not None and equity.start_equity is not None:
            start_equity = equity.start_equity
        if equity is not None and equity.end_equity is not None:
            end_equity = equity.end_equity

        period_start = datetime.combine(quarter.start, time.min, tzinfo=timezone.utc)
        period_end = datetime.combine(quarter.end, time.max, tzinfo=timezone.utc)
        net_deposits = repository.sum_transfers(follower.id, TransferType.DEPOSIT, period_start, period_end)
        net_withdrawals = repository.sum_transfers(follower.id, TransferType.WITHDRAWAL, period_start, period_end)

        fee = compute_quarter_fee(start_equity, end_equity, net_deposits, net_withdrawals)
        if fee.total_fee < self.min_invoice_amount:
            logger.info("Invoice below minimum, skipping", follower_id=follower.id, amount=str(fee.total_fee))
            return None

        draft = Invoice(
            id=0,
            follower_id=follower.id,
            quarter_label=quarter.label,
            period_start=quarter.start,
            period_end=quarter.end,
            avg_balance=avg_balance,
            days_in_quarter=quarter.total_days,
            days_active=days_active,
            base_fee=fee.base_fee,
            bracket_fee=fee.bracket_fee,
            bracket_label=fee.bracket_label,
            start_equity=start_equity,
            end_equity=end_equity,
            net_deposits=net_deposits,
            net_withdrawals=net_withdrawals,
            quarter_profit=fee.profit,
            total_amount=fee.total_fee,
            status=InvoiceStatus.PENDING,
            payment_token=self.token_factory(),
        )
        try:
            invoice = repository.create_invoice_with_equity(draft)
        except IntegrityError:
            logger.info("Invoice already exists", follower_id=follower.id, quarter=quarter.label)
            return None

        logger.info(
            "INVOICE_CREATED",
            follower_id=follower.id,
            quarter=quarter.label,
            profit=str(fee.profit),
            bracket=fee.bracket_label,
            total=str(fee.total_fee),
            days_active=days_active,
        )
        self.notify(
            follower.id,
            notifications.INVOICE_CREATED,
            f"Invoice for {quarter.label}",
            f"Your {quarter.label} invoice of €{fee.total_fee:.2f} ({fee.bracket_label}) is ready.",
            {"invoice_id": invoice.id, "quarter": quarter.label},
        )

        if await self.mailer(self.config, follower.email, follower.name, invoice):
            repository.set_invoice_status(invoice.id, InvoiceStatus.EMAILED)
            invoice.status = InvoiceStatus.EMAILED
        return invoice
