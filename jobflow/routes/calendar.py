"""
Calendar API Routes
Secret-URL iCalendar feed of a customer's jobs. The feed itself is public:
possession of the token is the credential.
"""

from fastapi import APIRouter, Depends, Response

from jobflow.auth.verify import CallerContext, auth_dependency
from jobflow.infrastructure.observability.logging import get_logger
from jobflow.models.api.job_response import CalendarFeedUrlResponse
from jobflow.routes.dependencies import get_calendar_feed_service

logger = get_logger(__name__)

router = APIRouter(prefix="/calendar", tags=["calendar"])


@router.get("/feed-url", response_model=CalendarFeedUrlResponse)
async def get_feed_url(
    caller: CallerContext = Depends(auth_dependency),
    feeds=Depends(get_calendar_feed_service),
):
    token = await feeds.get_feed_token(caller.user_id)
    return CalendarFeedUrlResponse(url=feeds.feed_url(token))


@router.post("/feed-url/rotate", response_model=CalendarFeedUrlResponse)
async def rotate_feed_url(
    caller: CallerContext = Depends(auth_dependency),
    feeds=Depends(get_calendar_feed_service),
):
    token = await feeds.rotate_feed_token(caller.user_id)
    return CalendarFeedUrlResponse(url=feeds.feed_url(token))


@router.get("/feed/{token}.ics")
async def get_calendar_feed(token: str, feeds=Depends(get_calendar_feed_service)):
    content = await feeds.render_feed(token)
    return Response(
        content=content,
        media_type="text/calendar; charset=utf-8",
        headers={"Content-Disposition": 'attachment; filename="jobs.ics"'},
    )
