"""
Route optimization API.

POST /api/optimize-route: plan/usage admission, usage recorded, then the
sequencing + routing calls.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from optiroute.api.deps import get_profile_store, get_router
from optiroute.core.auth import get_current_user_id
from optiroute.features.identity.profile_store import ProfileStore
from optiroute.features.plans.service import consume_optimization
from optiroute.features.routing.here_client import HereRouter
from optiroute.features.routing.service import optimize_route
from optiroute.models.route import Waypoint


router = APIRouter(tags=["optimize"])


class OptimizeRouteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    origin: Waypoint
    destination: Waypoint
    via_stops: Optional[List[Waypoint]] = Field(default=None, alias="viaStops")


@router.post("/optimize-route")
async def optimize(
    request: OptimizeRouteRequest,
    user_id: str = Depends(get_current_user_id),
    here: HereRouter = Depends(get_router),
    store: ProfileStore = Depends(get_profile_store),
):
    """
    Optimize the visiting order of the via stops between origin and destination.

    Returns:
        {"optimizedWaypointDetails", "routeSections", "totalDuration", "totalLength"}

    Errors:
        400: malformed waypoints
        401: not signed in
        403: stop or usage limit exceeded for the user's plan
        409: usage counter kept changing concurrently
        500: configuration or provider failure
    """
    via_stops = request.via_stops or []

    await consume_optimization(store, user_id, len(via_stops))

    result = await optimize_route(here, request.origin, request.destination, via_stops)
    return result.to_response()
