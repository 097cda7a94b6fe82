import logging
import re
from typing import List, Optional, Tuple

from bson.objectid import ObjectId
from fastapi import status

from ticketing.constants import EVENT_CATEGORIES
from ticketing.core import APIError, PageParams, clean_aggregate, utcnow
from ticketing.entities import Event, Ticket
from ticketing.pipelines import published_category_counts
from ticketing.policies import ACTIVE_STATUSES
from ticketing.schemas import (CategoryCount, CreateEventRequest,
                               UpdateEventRequest)
from ticketing.security import CurrentUser

logger = logging.getLogger(__name__)

FEATURED_LIMIT = 6


def can_manage_event(event: Event, user: CurrentUser) -> bool:
    return user.is_admin or str(event.organizer_id) == user.id


class EventService():

    async def list_events(self, params: PageParams,
                          category: Optional[str] = None,
                          search: Optional[str] = None,
                          upcoming: bool = True) -> Tuple[List[Event], int]:
        query = {"status": "published"}
        if category:
            query["category"] = category
        if search:
            pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
            query["$or"] = [{"title": pattern}, {"venue": pattern}]
        if upcoming:
            query["date"] = {"$gte": utcnow()}

        events = await Event.find(query).sort("+date").skip(
            params.skip).limit(params.limit).to_list()
        total = await Event.find(query).count()
        return events, total

    async def featured_events(self) -> List[Event]:
        return await Event.find({
            "status": "published",
            "is_featured": True,
            "date": {
                "$gte": utcnow()
            }
        }).sort("+date").limit(FEATURED_LIMIT).to_list()

    async def categories(self) -> List[CategoryCount]:
        rows = clean_aggregate(await Event.aggregate(
            published_category_counts()).to_list())
        counts = {row["category"]: row["count"] for row in rows}
        return [
            CategoryCount(category=category, count=counts.get(category, 0))
            for category in EVENT_CATEGORIES
        ]

    async def _find(self, event_id: str) -> Event:
        event = await Event.find_one({"_id": ObjectId(event_id)})
        if not event:
            raise APIError(status_code=status.HTTP_404_NOT_FOUND,
                           error_code="EVENT_NOT_FOUND")
        return event

    async def get_owned_event(self, event_id: str,
                              user: CurrentUser) -> Event:
        event = await self._find(event_id)
        if not can_manage_event(event, user):
            raise APIError(status_code=status.HTTP_403_FORBIDDEN,
                           error_code="FORBIDDEN",
                           error_message="not the organizer of this event")
        return event

    async def get_event(self, event_id: str,
                        user: Optional[CurrentUser] = None) -> Event:
        event = await self._find(event_id)
        # Unpublished events only exist for their organizer and admins
        if event.status != "published" and not (user and can_manage_event(
                event, user)):
            raise APIError(status_code=status.HTTP_404_NOT_FOUND,
                           error_code="EVENT_NOT_FOUND")
        return event

    async def create_event(self, request: CreateEventRequest,
                           user: CurrentUser) -> Event:
        now = utcnow()
        publish = request.publish and user.is_admin
        event = await Event(
            **request.model_dump(exclude={"publish"}),
            available_tickets=request.total_tickets,
            organizer_id=ObjectId(user.id),
            status="published" if publish else "draft",
            approved_by=ObjectId(user.id) if publish else None,
            approved_at=now if publish else None,
        ).insert()
        logger.info("event %s created by %s (%s)", event.id, user.id,
                    event.status)
        return event

    async def update_event(self, event_id: str, request: UpdateEventRequest,
                           user: CurrentUser) -> Event:
        event = await self.get_owned_event(event_id, user)
        changes = request.model_dump(exclude_unset=True)
        if not changes:
            return event

        start = changes.get("date") or event.date
        end = changes.get("end_date") or event.end_date
        if end <= start:
            raise APIError(status_code=status.HTTP_400_BAD_REQUEST,
                           error_code="INVALID_EVENT_DATES")

        query = {"_id": event.id}
        quota_diff = 0
        if "total_tickets" in changes:
            sold = event.total_tickets - event.available_tickets
            if changes["total_tickets"] < sold:
                raise APIError(status_code=status.HTTP_400_BAD_REQUEST,
                               error_code="INVALID_QUOTA",
                               details={"tickets_sold": sold})

            # Shrinking the quota must not push stock below zero even if
            # tickets sell between the read above and this update
            quota_diff = changes["total_tickets"] - event.total_tickets
            if quota_diff < 0:
                query["available_tickets"] = {"$gte": -quota_diff}

        update = {"$set": {**changes, "updated_at": utcnow()}}
        if quota_diff:
            update["$inc"] = {"available_tickets": quota_diff}

        result = await Event.find_one(query).update(update)
        if result.modified_count == 0:
            raise APIError(status_code=status.HTTP_400_BAD_REQUEST,
                           error_code="INVALID_QUOTA")

        logger.info("event %s updated by %s: %s", event.id, user.id,
                    ",".join(sorted(changes)))
        return await Event.find_one({"_id": event.id})

    async def delete_event(self, event_id: str, user: CurrentUser):
        event = await self.get_owned_event(event_id, user)
        active = await Ticket.find({
            "event_id": event.id,
            "status": {
                "$in": list(ACTIVE_STATUSES)
            }
        }).count()
        if active:
            raise APIError(status_code=status.HTTP_409_CONFLICT,
                           error_code="EVENT_HAS_TICKETS",
                           details={"active_tickets": active})
        await event.delete()
        logger.info("event %s deleted by %s", event.id, user.id)

    async def publish_event(self, event_id: str, user: CurrentUser) -> Event:
        """
        Admins publish directly, organizers submit for approval
        """
        event = await self.get_owned_event(event_id, user)
        now = utcnow()
        if user.is_admin:
            allowed = ["draft", "pending", "rejected"]
            changes = {
                "status": "published",
                "approved_by": ObjectId(user.id),
                "approved_at": now,
                "updated_at": now
            }
        else:
            allowed = ["draft", "rejected"]
            changes = {"status": "pending", "updated_at": now}

        result = await Event.find_one({
            "_id": event.id,
            "status": {
                "$in": allowed
            }
        }).update({"$set": changes})
        if result.modified_count == 0:
            raise APIError(status_code=status.HTTP_400_BAD_REQUEST,
                           error_code="INVALID_EVENT_STATE",
                           details={"status": event.status})

        logger.info("event %s moved to %s by %s", event.id,
                    changes["status"], user.id)
        return await Event.find_one({"_id": event.id})

    async def organizer_events(
            self,
            user: CurrentUser,
            params: PageParams,
            event_status: Optional[str] = None) -> Tuple[List[Event], int]:
        query = {"organizer_id": ObjectId(user.id)}
        if event_status:
            query["status"] = event_status
        events = await Event.find(query).sort("-created_at").skip(
            params.skip).limit(params.limit).to_list()
        total = await Event.find(query).count()
        return events, total
