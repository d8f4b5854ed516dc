"""
Agent standing: success-rate rollup, reviews, admin ranking and point payouts.
"""
import logging
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from database import create_document, now, oid, serialize_doc
from errors import AlreadyExists, InvalidTransition, NotFound, ValidationError
from lifecycle import CANCELLED, COMPLETED
from notifications import Notifier
from schemas import AgentReview, RewardRequest

logger = logging.getLogger(__name__)


class AgentStatsService:
    def __init__(self, db: Database, notifier: Optional[Notifier] = None):
        self.db = db
        self.notifier = notifier or Notifier(db)

    # ---------------------------- Rollup ----------------------------------
    def _count(self, agent_id, status: str) -> int:
        flt = {"agent_id": agent_id, "status": status}
        return self.db.order.count_documents(flt) + self.db.bundle_order.count_documents(flt)

    def average_rating(self, agent_id) -> float:
        ratings = [
            r["rating"]
            for r in self.db.agent_review.find(
                {"agent_id": oid(agent_id), "is_approved": True, "is_visible": True}, {"rating": 1}
            )
        ]
        return sum(ratings) / len(ratings) if ratings else 0.0

    def recalculate(self, agent_id) -> Dict[str, int]:
        aid = oid(agent_id)
        completed = self._count(aid, COMPLETED)
        cancelled = self._count(aid, CANCELLED)
        decided = completed + cancelled
        success_rate = round(completed / decided * 100) if decided else 0
        rating_score = round(self.average_rating(aid) * 20)
        # the rating-based score may lift the displayed rate above the raw ratio
        blended = max(success_rate, rating_score)
        self.db.user.update_one({"_id": aid}, {"$set": {
            "agent_profile.total_transactions": completed,
            "agent_profile.success_rate": blended,
            "updated_at": now(),
        }})
        return {"total_transactions": completed, "success_rate": blended}

    def safe_recalculate(self, agent_id) -> None:
        try:
            self.recalculate(agent_id)
        except Exception:
            logger.exception("Failed to recalculate stats for agent %s", agent_id)

    # ---------------------------- Reviews ---------------------------------
    def add_review(self, user_id, agent_id, rating: int, comment: Optional[str] = None, order_id=None) -> Dict[str, Any]:
        if not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("Rating must be between 1 and 5")
        agent = self.db.user.find_one({"_id": oid(agent_id), "role": "agent"})
        if not agent:
            raise NotFound("Agent not found")
        if order_id and self.db.agent_review.find_one({"user_id": oid(user_id), "order_id": oid(order_id)}):
            raise AlreadyExists("You already reviewed this order")
        review_id = create_document(self.db, "agent_review", AgentReview(
            agent_id=oid(agent_id),
            user_id=oid(user_id),
            order_id=oid(order_id) if order_id else None,
            rating=rating,
            comment=comment,
        ))
        return serialize_doc(self.db.agent_review.find_one({"_id": oid(review_id)}))

    def approve_review(self, review_id) -> Dict[str, Any]:
        review = self.db.agent_review.find_one_and_update(
            {"_id": oid(review_id)},
            {"$set": {"is_approved": True, "updated_at": now()}},
            return_document=ReturnDocument.AFTER,
        )
        if not review:
            raise NotFound("Review not found")
        self.safe_recalculate(review["agent_id"])
        return serialize_doc(review)

    def delete_review(self, review_id) -> None:
        review = self.db.agent_review.find_one_and_delete({"_id": oid(review_id)})
        if not review:
            raise NotFound("Review not found")
        self.safe_recalculate(review["agent_id"])

    def reviews_for(self, agent_id, approved_only: bool = True) -> List[Dict[str, Any]]:
        flt: Dict[str, Any] = {"agent_id": oid(agent_id)}
        if approved_only:
            flt.update({"is_approved": True, "is_visible": True})
        return [serialize_doc(r) for r in self.db.agent_review.find(flt).sort("created_at", -1)]

    # ---------------------------- Ranking ---------------------------------
    def set_rank(self, agent_id, rank: int, is_top_agent: bool = True) -> None:
        if rank < 1:
            raise ValidationError("Rank must be at least 1")
        result = self.db.user.update_one(
            {"_id": oid(agent_id), "role": "agent"},
            {"$set": {"agent_profile.rank": rank, "agent_profile.is_top_agent": is_top_agent, "updated_at": now()}},
        )
        if result.matched_count == 0:
            raise NotFound("Agent not found")

    def top_agents(self, limit: int = 10) -> List[Dict[str, Any]]:
        agents = list(
            self.db.user.find({"role": "agent", "is_approved": True, "agent_profile.is_top_agent": True})
            .sort("agent_profile.rank", 1)
            .limit(limit)
        )
        profiles = {
            p["user_id"]: p for p in self.db.profile.find({"user_id": {"$in": [a["_id"] for a in agents]}})
        }
        out = []
        for a in agents:
            stats = a.get("agent_profile") or {}
            profile = profiles.get(a["_id"]) or {}
            out.append({
                "id": str(a["_id"]),
                "name": stats.get("display_name") or profile.get("name"),
                "rank": stats.get("rank", 999),
                "success_rate": stats.get("success_rate", 0),
                "total_transactions": stats.get("total_transactions", 0),
                "agent_points": a.get("agent_points", 0),
            })
        return out

    # ---------------------------- Point payouts ---------------------------
    def request_reward(self, agent_id) -> Dict[str, Any]:
        aid = oid(agent_id)
        agent = self.db.user.find_one({"_id": aid, "role": "agent"})
        if not agent:
            raise NotFound("Agent not found")
        points = agent.get("agent_points", 0)
        if points <= 0:
            raise ValidationError("No points to withdraw")
        if self.db.reward_request.find_one({"agent_id": aid, "status": "pending"}):
            raise AlreadyExists("A payout request is already pending")
        request_id = create_document(self.db, "reward_request", RewardRequest(agent_id=aid, amount=points))
        profile = self.db.profile.find_one({"user_id": aid}) or {}
        self.notifier.notify_admins(
            "reward_request", "Point payout requested",
            f"Agent {profile.get('name', aid)} requested a payout of {points:g} points.",
        )
        return serialize_doc(self.db.reward_request.find_one({"_id": oid(request_id)}))

    def resolve_reward(self, request_id, approve: bool) -> Dict[str, Any]:
        request = self.db.reward_request.find_one_and_update(
            {"_id": oid(request_id), "status": "pending"},
            {"$set": {"status": "approved" if approve else "rejected", "updated_at": now()}},
            return_document=ReturnDocument.AFTER,
        )
        if not request:
            if self.db.reward_request.find_one({"_id": oid(request_id)}):
                raise InvalidTransition("Request already resolved")
            raise NotFound("Reward request not found")
        if approve:
            agent = self.db.user.find_one({"_id": request["agent_id"]}) or {}
            remaining = max(0, agent.get("agent_points", 0) - request["amount"])
            self.db.user.update_one({"_id": request["agent_id"]}, {"$set": {"agent_points": remaining}})
        return serialize_doc(request)
