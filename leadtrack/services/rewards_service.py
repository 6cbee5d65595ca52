import logging
from decimal import Decimal, ROUND_HALF_UP

from leadtrack.exceptions import InsufficientPoints, InvalidTransition, PermissionDenied
from leadtrack.schemas import PayoutStatus, Profile

logger = logging.getLogger(__name__)


class RewardsService:
    """Points ledger and payout requests."""

    def __init__(self, gateway, points_per_dollar: int = 10):
        self.gateway = gateway
        self.points_per_dollar = points_per_dollar

    def dollar_value(self, points: int) -> Decimal:
        return (Decimal(points) / Decimal(self.points_per_dollar)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    async def award_points(self, admin: Profile, agent: Profile, amount: int, reason: str, lead_id: str = None):
        if not admin.is_admin:
            raise PermissionDenied("Only admins can award points")
        if not reason or not reason.strip():
            raise InvalidTransition("A reason is required to award points")
        entry = await self.gateway.award_points(agent.id, agent.name, amount, reason.strip(), lead_id)
        logger.info(f"[Rewards] {amount} points to {agent.id}: {reason}")
        return entry

    async def get_history(self, agent_id: str):
        return await self.gateway.fetch_points_history(agent_id)

    async def request_payout(self, agent: Profile, points: int):
        if points <= 0:
            raise InvalidTransition("Payout must be for a positive number of points")
        # Balance is re-read so a stale profile cannot overdraw
        current = await self.gateway.fetch_profile(agent.id)
        if points > current.points:
            raise InsufficientPoints(f"Requested {points} points, balance is {current.points}")
        return await self.gateway.create_payout_request(current, points, self.dollar_value(points))

    async def list_requests(self, user: Profile):
        """Admins see every request, agents only their own."""
        return await self.gateway.fetch_payout_requests(None if user.is_admin else user.id)

    async def process_request(self, admin: Profile, request_id: str, action: PayoutStatus, note: str = None):
        if not admin.is_admin:
            raise PermissionDenied("Only admins can process payouts")
        return await self.gateway.process_payout_request(request_id, PayoutStatus(action), admin.id, note)
