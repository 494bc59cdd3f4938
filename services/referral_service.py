import logging
import secrets
import string
from typing import List, Optional

from pymongo.errors import DuplicateKeyError

from models.referral import CommissionStatus
from models.user import Role
from services.base import BaseService, normalize_address
from services.errors import DuplicateError, NotFoundError, ValidationError
from services.pagination import paginate

logger = logging.getLogger(__name__)


def generate_referral_code():
    """Generate a unique referral code"""
    return ''.join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(8))


class ReferralService(BaseService):

    async def ensure_user(self, address: str, role: Role = Role.USER) -> dict:
        """Fetch a user, creating it on first sight"""
        address = normalize_address(address)
        if not address:
            raise ValidationError("user", "address is required")

        user = await self.db.users.find_one({"_id": address})
        if user:
            return user

        for _ in range(5):
            doc = {
                "_id": address,
                "role": role.value,
                "referred_by": None,
                "referral_code": generate_referral_code(),
                "created_at": self.now(),
            }
            try:
                await self.db.users.insert_one(doc)
                logger.info(f"Registered user {address}")
                return doc
            except DuplicateKeyError:
                existing = await self.db.users.find_one({"_id": address})
                if existing:
                    return existing
        raise DuplicateError("Could not allocate a unique referral code")

    async def get_user(self, address: str) -> dict:
        user = await self.db.users.find_one({"_id": normalize_address(address)})
        if not user:
            raise NotFoundError("User", address)
        return user

    async def resolve_referral_code(self, code: str) -> dict:
        user = await self.db.users.find_one({"referral_code": (code or "").strip().upper()})
        if not user:
            raise NotFoundError("Referral code", code)
        return user

    async def build_upline(self, address: str, max_levels: Optional[int] = None) -> List[str]:
        """Referrers from the direct one upward, stopping at the root, the level cap, or a revisit"""
        max_levels = max_levels or self.settings.max_referral_levels
        chain: List[str] = []
        visited = {address}
        current = address

        while len(chain) < max_levels:
            user = await self.db.users.find_one({"_id": current})
            referrer = user.get("referred_by") if user else None
            if not referrer or referrer in visited:
                break
            chain.append(referrer)
            visited.add(referrer)
            current = referrer
        return chain

    async def _would_cycle(self, user: str, referrer: str) -> bool:
        visited = set()
        current = referrer
        while current and current not in visited:
            if current == user:
                return True
            visited.add(current)
            doc = await self.db.users.find_one({"_id": current})
            current = doc.get("referred_by") if doc else None
        return False

    async def set_referrer(self, user: str, referrer: str = None, referral_code: str = None) -> dict:
        user_doc = await self.ensure_user(user)
        if referral_code:
            referrer_doc = await self.resolve_referral_code(referral_code)
        elif referrer:
            referrer_doc = await self.ensure_user(referrer)
        else:
            raise ValidationError("referrer", "a referrer address or referral code is required")

        user_id, referrer_id = user_doc["_id"], referrer_doc["_id"]
        if user_id == referrer_id:
            raise ValidationError("referrer", "users cannot refer themselves")
        if user_doc.get("referred_by"):
            raise DuplicateError(f"User {user_id} already has a referrer")
        if await self._would_cycle(user_id, referrer_id):
            raise ValidationError("referrer", "referral would create a cycle")

        result = await self.db.users.update_one(
            {"_id": user_id, "referred_by": None},
            {"$set": {"referred_by": referrer_id, "referred_at": self.now()}}
        )
        if result.modified_count == 0:
            raise DuplicateError(f"User {user_id} already has a referrer")

        logger.info(f"User {user_id} referred by {referrer_id}")
        return await self.get_user(user_id)

    async def create_commissions(self, stake: dict) -> List[dict]:
        """Fan a confirmed stake out to the upline. Safe to call more than once per stake."""
        rates = self.settings.referral_rates
        upline = await self.build_upline(stake["owner"], len(rates))
        now = self.now()

        created = []
        for index, referrer in enumerate(upline):
            level = index + 1
            rate = rates[index]
            doc = {
                "_id": f"{stake['_id']}:{level}",
                "referrer": referrer,
                "referred_user": stake["owner"],
                "stake_id": stake["_id"],
                "level": level,
                "stake_amount": stake["amount"],
                "commission_rate": rate,
                "commission_amount": round(stake["amount"] * rate, 6),
                "status": CommissionStatus.PENDING.value,
                "created_at": now,
            }
            try:
                await self.db.referrals.insert_one(doc)
                created.append(doc)
            except DuplicateKeyError:
                logger.debug(f"Commission {doc['_id']} already exists")

        if created:
            logger.info(f"Created {len(created)} commissions for stake {stake['_id']}")
        return created

    async def list_commissions(self, referrer: str, cursor: str = None, limit: int = None) -> dict:
        return await paginate(self.db.referrals, {"referrer": normalize_address(referrer)},
                              self.settings, cursor, limit)

    async def total_commissions(self, referrer: str) -> float:
        commissions = await self.db.referrals.find({"referrer": referrer}).to_list(None)
        return round(sum(c["commission_amount"] for c in commissions), 6)

    async def commissions_by_level(self, referrer: str) -> List[dict]:
        commissions = await self.db.referrals.find({"referrer": normalize_address(referrer)}).to_list(None)
        summary = []
        for level in range(1, self.settings.max_referral_levels + 1):
            at_level = [c for c in commissions if c["level"] == level]
            summary.append({
                "level": level,
                "count": len(at_level),
                "total_commission": round(sum(c["commission_amount"] for c in at_level), 6),
            })
        return summary

    async def network_structure(self, referrer: str) -> List[dict]:
        """Unique staking users and stake volume per level below ``referrer``"""
        commissions = await self.db.referrals.find({"referrer": normalize_address(referrer)}).to_list(None)
        structure = []
        for level in range(1, self.settings.max_referral_levels + 1):
            at_level = [c for c in commissions if c["level"] == level]
            structure.append({
                "level": level,
                "unique_users": len({c["referred_user"] for c in at_level}),
                "total_stake_volume": round(sum(c["stake_amount"] for c in at_level), 6),
            })
        return structure

    async def referral_tree(self, address: str, depth: int = 3) -> dict:
        address = normalize_address(address)
        user = await self.get_user(address)
        depth = max(1, min(depth, self.settings.max_referral_levels))
        return {
            "user": address,
            "level": 0,
            "joined_at": user.get("created_at"),
            "children": await self._children(address, 1, depth, {address}),
        }

    async def _children(self, address: str, level: int, depth: int, visited: set) -> List[dict]:
        if level > depth:
            return []
        referred = await self.db.users.find({"referred_by": address}).sort("created_at", 1).to_list(None)
        nodes = []
        for child in referred:
            if child["_id"] in visited:
                continue
            visited.add(child["_id"])
            nodes.append({
                "user": child["_id"],
                "level": level,
                "joined_at": child.get("created_at"),
                "children": await self._children(child["_id"], level + 1, depth, visited),
            })
        return nodes

    async def referral_stats(self, address: str) -> dict:
        address = normalize_address(address)
        user = await self.ensure_user(address)
        by_level = await self.commissions_by_level(address)
        network = await self.network_structure(address)
        direct = await self.db.users.count_documents({"referred_by": address})
        return {
            "user": address,
            "referral_code": user.get("referral_code"),
            "referred_by": user.get("referred_by"),
            "direct_referrals": direct,
            "total_commission": round(sum(level["total_commission"] for level in by_level), 6),
            "by_level": by_level,
            "network_by_level": {n["level"]: n["unique_users"] for n in network},
        }
