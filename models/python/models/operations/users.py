"""Bidder lookup and eligibility gate.

Registration, FICA document review and suspension are owned elsewhere; this
module only reads the resulting flags.
"""

from typing import Literal, Optional

from models.entities.couchbase.users import User, UserData
from models.operations.exceptions import BidderNotEligible, BidderNotFound


async def user_get_by_email(email: str) -> Optional[User]:
    users = await User.find({"email": email.strip().lower()}, limit=1)
    return users[0] if users else None


async def user_register(
    email: str,
    name: Optional[str] = None,
    role: Literal["buyer", "seller", "admin"] = "buyer",
    fica_approved: bool = False,
) -> User:
    data = UserData(email=email.strip().lower(), name=name, role=role, fica_approved=fica_approved)
    return await User.create(data)


def user_eligibility_error(user: User) -> Optional[str]:
    """Return why ``user`` may not bid, or None if they may."""
    if user.data.suspended:
        return "Your account has been suspended. Please contact support."
    if not user.data.fica_approved:
        if user.data.rejection_reason:
            return (
                "Your FICA documents were rejected. Please re-upload your documents "
                "for approval before bidding."
            )
        return "FICA approval required before bidding. Please upload required documents."
    return None


async def user_require_bid_eligibility(email: str) -> User:
    """Load the bidder and raise unless they are FICA-approved and not suspended."""
    user = await user_get_by_email(email)
    if not user:
        raise BidderNotFound(email)
    error = user_eligibility_error(user)
    if error:
        raise BidderNotEligible(error)
    return user


async def user_is_eligible(email: str) -> bool:
    user = await user_get_by_email(email)
    return bool(user) and user_eligibility_error(user) is None
