import logging
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, InvalidOperation
from typing import Any, List, Optional, Sequence

from models.ledger import Split, SplitType
from utils.errors import InvalidSplitParams

# Configure module logger
logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


class SplitAllocator:
    """
    Class to partition an expense amount across a group of participants

    Every policy works on Decimal values quantized to the cent. EQUAL and
    EXACT allocations always sum exactly to the amount. PERCENTAGE and SHARES
    round each participant independently, so their total can drift from the
    amount by up to a cent per participant unless reconcile is requested.
    """

    def __init__(self, tolerance: Decimal = CENT):
        """
        Initialize the SplitAllocator

        Args:
            tolerance: Gap between the policy parameters and their expected
                total (100 or the amount) that must not be reached
        """
        self.tolerance = Decimal(tolerance)
        logger.debug(f"SplitAllocator initialized with tolerance {self.tolerance}")

    def allocate(self,
                 amount: Any,
                 splitType: SplitType,
                 participantIds: Sequence[str],
                 policyParams: Optional[Sequence[Any]] = None,
                 payerId: Optional[str] = None,
                 reconcile: bool = False
                 ) -> List[Split]:
        """
        Compute the per-participant allocation of an amount

        Args:
            amount: Total amount, positive, at most two decimals
            splitType: Policy used to partition the amount
            participantIds: Ordered, unique member IDs taking part
            policyParams: Percentages, exact amounts or share weights,
                one per participant (ignored for EQUAL)
            payerId: Member who paid; must be one of the participants
            reconcile: Hand out PERCENTAGE/SHARES rounding drift with the
                largest-remainder rule so the splits sum to the amount

        Returns:
            List of Split objects in participant order

        Raises:
            InvalidSplitParams: If any precondition is violated
        """
        amount = self._validate_amount(amount)
        participants = self._validate_participants(participantIds, payerId)

        splitType = SplitType(splitType)
        if splitType == SplitType.EQUAL:
            shares = self._equal(amount, len(participants))
        elif splitType == SplitType.PERCENTAGE:
            shares, raw = self._percentage(amount, self._params(policyParams, participants, "Percentage values"))
            if reconcile:
                shares = self._reconcile(shares, raw, amount)
        elif splitType == SplitType.EXACT:
            shares = self._exact(amount, self._params(policyParams, participants, "Exact amounts"))
        else:
            shares, raw = self._shares(amount, self._params(policyParams, participants, "Share values"))
            if reconcile:
                shares = self._reconcile(shares, raw, amount)

        splits = [
            Split(memberId=memberId, amount=share, isPayer=memberId == payerId)
            for memberId, share in zip(participants, shares)
        ]
        logger.debug(f"Allocated {amount} by {splitType.value}: {[str(s) for s in shares]}")
        return splits

    @staticmethod
    def reconciles(splits: Sequence[Split], amount: Any) -> bool:
        """Whether the splits sum exactly to the amount"""
        return sum((split.amount for split in splits), Decimal("0")) == Decimal(str(amount))

    @staticmethod
    def roundCurrency(amount: Any) -> Decimal:
        """
        Round a currency amount to 2 decimal places

        Args:
            amount: The amount to round

        Returns:
            Decimal: The rounded amount
        """
        # str() first so floats round on their printed value
        return Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)

    def _validate_amount(self, amount: Any) -> Decimal:
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            raise InvalidSplitParams(f"Amount is not a number: {amount!r}")
        if not value.is_finite() or value <= 0:
            raise InvalidSplitParams(f"Amount must be greater than zero, got {amount}")
        if value != value.quantize(CENT):
            raise InvalidSplitParams(f"Amount must have at most two decimals, got {amount}")
        return value.quantize(CENT)

    @staticmethod
    def _validate_participants(participantIds: Sequence[str], payerId: Optional[str]) -> List[str]:
        participants = list(participantIds or [])
        if not participants:
            raise InvalidSplitParams("At least one participant is required")
        if len(set(participants)) != len(participants):
            raise InvalidSplitParams("Participants must be unique")
        if payerId not in participants:
            raise InvalidSplitParams(f"Payer {payerId} is not one of the participants")
        return participants

    @staticmethod
    def _params(policyParams: Optional[Sequence[Any]], participants: List[str], label: str) -> List[Decimal]:
        if policyParams is None:
            raise InvalidSplitParams(f"{label} are required for this split type")
        if len(policyParams) != len(participants):
            raise InvalidSplitParams(
                f"{label} must have one entry per participant: "
                f"got {len(policyParams)} for {len(participants)} participants"
            )
        try:
            values = [Decimal(str(value)) for value in policyParams]
        except (InvalidOperation, ValueError):
            raise InvalidSplitParams(f"{label} must be numbers")
        if not all(value.is_finite() for value in values):
            raise InvalidSplitParams(f"{label} must be finite numbers")
        return values

    @staticmethod
    def _equal(amount: Decimal, count: int) -> List[Decimal]:
        share = (amount / count).quantize(CENT, rounding=ROUND_DOWN)
        remainder = amount - share * count
        # The first participant absorbs the whole remainder
        return [share + remainder] + [share] * (count - 1)

    def _percentage(self, amount: Decimal, percentages: List[Decimal]):
        if any(pct < 0 for pct in percentages):
            raise InvalidSplitParams("Percentages must not be negative")
        total = sum(percentages, Decimal("0"))
        if abs(total - HUNDRED) >= self.tolerance:
            logger.error(f"Percentages don't add up: {total} != 100")
            raise InvalidSplitParams(f"Percentages must add up to 100, got {total}")

        raw = [pct / HUNDRED * amount for pct in percentages]
        return [value.quantize(CENT, rounding=ROUND_HALF_UP) for value in raw], raw

    def _exact(self, amount: Decimal, amounts: List[Decimal]) -> List[Decimal]:
        if any(value < 0 for value in amounts):
            raise InvalidSplitParams("Exact amounts must not be negative")
        total = sum(amounts, Decimal("0"))
        if abs(total - amount) >= self.tolerance:
            logger.error(f"Exact amounts don't balance: {total} != {amount}")
            raise InvalidSplitParams(f"Exact amounts must add up to the total {amount}, got {total}")

        shares = [value.quantize(CENT, rounding=ROUND_HALF_UP) for value in amounts]
        if sum(shares, Decimal("0")) != amount:
            raise InvalidSplitParams(
                f"Exact amounts must add up to the total {amount} to the cent, got {sum(shares, Decimal('0'))}"
            )
        return shares

    @staticmethod
    def _shares(amount: Decimal, weights: List[Decimal]):
        if any(weight <= 0 for weight in weights):
            raise InvalidSplitParams("Share values must be positive")
        totalShares = sum(weights, Decimal("0"))
        amountPerShare = amount / totalShares

        raw = [weight * amountPerShare for weight in weights]
        return [value.quantize(CENT, rounding=ROUND_HALF_UP) for value in raw], raw

    @staticmethod
    def _reconcile(shares: List[Decimal], raw: List[Decimal], amount: Decimal) -> List[Decimal]:
        """Largest-remainder: move the drift one cent at a time, biggest rounding loss first"""
        drift = amount - sum(shares, Decimal("0"))
        cents = int(drift / CENT)
        if cents == 0:
            return shares

        step = CENT if cents > 0 else -CENT
        losses = [rawValue - share for rawValue, share in zip(raw, shares)]
        # sorted() is stable, so ties keep participant order
        if cents > 0:
            order = sorted(range(len(shares)), key=lambda i: losses[i], reverse=True)
        else:
            order = sorted(range(len(shares)), key=lambda i: losses[i])

        reconciled = list(shares)
        for position in range(abs(cents)):
            reconciled[order[position % len(order)]] += step
        logger.debug(f"Reconciled {abs(cents)} cent(s) of rounding drift")
        return reconciled
