"""Bridge fee computation.

The fee is 1% of the gross amount, computed with integer floor division in the
token's smallest unit so the result matches the on-chain uint256 arithmetic.
Amounts below 100 units therefore carry no fee.
"""

from .models import FeeBreakdown

UINT256_MAX = 2**256 - 1


class FeeEngine:
    """Computes the net payout for a gross bridged amount."""

    FEE_DIVISOR: int = 100  # 1%

    def fee_amount(self, gross: int) -> int:
        self._check_amount(gross)
        return gross // self.FEE_DIVISOR

    def net_amount(self, gross: int) -> int:
        return gross - self.fee_amount(gross)

    def breakdown(self, gross: int) -> FeeBreakdown:
        fee = self.fee_amount(gross)
        return FeeBreakdown(gross=gross, fee=fee, net=gross - fee)

    @staticmethod
    def _check_amount(gross: int) -> None:
        # bool is an int subclass but never a token amount
        if not isinstance(gross, int) or isinstance(gross, bool):
            raise ValueError(f"Amount must be an integer number of smallest units, got {type(gross).__name__}")
        if gross < 0 or gross > UINT256_MAX:
            raise ValueError(f"Amount out of uint256 range: {gross}")
