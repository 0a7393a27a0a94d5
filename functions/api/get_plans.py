"""
Plans Endpoint - GET /subscriptions/plans

Public plan catalog. No authentication.
"""

from shared.constants import PLANS
from shared.request_utils import get_origin
from shared.response_utils import success_response


def handler(event, context):
    plans = [
        {
            "id": plan_id,
            "name": plan["name"],
            "price": plan["price"],
            "currency": plan["currency"],
            "video_limit": plan["video_limit"],
            "features": plan["features"],
        }
        for plan_id, plan in PLANS.items()
    ]
    return success_response(
        {"plans": plans},
        headers={"Cache-Control": "public, max-age=3600"},
        origin=get_origin(event),
    )
