from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from ticketing.constants import EventStatus
from ticketing.core import (APIResponse, PageParams, page_params,
                            pagination_meta, valid_event_id)
from ticketing.entities import Event
from ticketing.schemas import (Category, CategoryCount, CreateEventRequest,
                               UpdateEventRequest)
from ticketing.security import (Authenticator, CurrentUser, current_user,
                                optional_current_user)
from ticketing.services.events import EventService


class EventController():
    """
    Public event catalogue and organizer event management
    """
    router = APIRouter()

    def __init__(self, *, event_service: EventService,
                 authenticator: Authenticator):
        self.router = APIRouter(prefix="/events", tags=["events"])
        self.event_service = event_service
        self.authenticator = authenticator

        self._init_router()

    async def get_events(self,
                         params: PageParams = Depends(page_params),
                         category: Optional[Category] = None,
                         search: Optional[str] = Query(None, max_length=100),
                         upcoming: bool = True):
        """
        Published events, soonest first
        """
        events, total = await self.event_service.list_events(
            params, category, search, upcoming)
        return APIResponse(success=True,
                           message="events fetched successfully",
                           data=events,
                           meta=pagination_meta(params, total, "total_events"))

    async def get_featured_events(self):
        events = await self.event_service.featured_events()
        return APIResponse(success=True,
                           message="featured events fetched successfully",
                           data=events)

    async def get_categories(self):
        categories = await self.event_service.categories()
        return APIResponse(success=True,
                           message="categories fetched successfully",
                           data=categories)

    async def get_my_events(self,
                            params: PageParams = Depends(page_params),
                            event_status: Optional[EventStatus] = Query(
                                None, alias="status"),
                            user: CurrentUser = Depends(current_user)):
        """
        Events created by the caller, whatever their status
        """
        events, total = await self.event_service.organizer_events(
            user, params, event_status)
        return APIResponse(success=True,
                           message="events fetched successfully",
                           data=events,
                           meta=pagination_meta(params, total, "total_events"))

    async def get_event(
            self,
            event_id: str = Depends(valid_event_id),
            user: Optional[CurrentUser] = Depends(optional_current_user)):
        event = await self.event_service.get_event(event_id, user)
        return APIResponse(success=True,
                           message="event fetched successfully",
                           data=event)

    async def create_event(self,
                           request: CreateEventRequest,
                           user: CurrentUser = Depends(current_user)):
        event = await self.event_service.create_event(request, user)
        return APIResponse(success=True,
                           message="event created successfully",
                           data=event)

    async def update_event(self,
                           request: UpdateEventRequest,
                           event_id: str = Depends(valid_event_id),
                           user: CurrentUser = Depends(current_user)):
        event = await self.event_service.update_event(event_id, request, user)
        return APIResponse(success=True,
                           message="event updated successfully",
                           data=event)

    async def delete_event(self,
                           event_id: str = Depends(valid_event_id),
                           user: CurrentUser = Depends(current_user)):
        await self.event_service.delete_event(event_id, user)
        return APIResponse(success=True, message="event deleted successfully")

    async def publish_event(self,
                            event_id: str = Depends(valid_event_id),
                            user: CurrentUser = Depends(current_user)):
        """
        Admins publish directly, organizers submit the event for approval
        """
        event = await self.event_service.publish_event(event_id, user)
        message = "event published successfully" \
            if event.status == "published" else "event submitted for approval"
        return APIResponse(success=True, message=message, data=event)

    def _init_router(self):
        organizer = [Depends(self.authenticator.require("organizer", "admin"))]

        self.router.add_api_route(
            "",
            self.get_events,
            methods=["GET"],
            response_model=APIResponse[List[Event]],
        )
        self.router.add_api_route(
            "/featured",
            self.get_featured_events,
            methods=["GET"],
            response_model=APIResponse[List[Event]],
        )
        self.router.add_api_route(
            "/categories",
            self.get_categories,
            methods=["GET"],
            response_model=APIResponse[List[CategoryCount]],
        )
        self.router.add_api_route(
            "/organizer/me",
            self.get_my_events,
            methods=["GET"],
            response_model=APIResponse[List[Event]],
            dependencies=organizer,
        )
        self.router.add_api_route(
            "",
            self.create_event,
            methods=["POST"],
            response_model=APIResponse[Event],
            status_code=status.HTTP_201_CREATED,
            dependencies=organizer,
        )
        self.router.add_api_route(
            "/{event_id}",
            self.get_event,
            methods=["GET"],
            response_model=APIResponse[Event],
            dependencies=[Depends(self.authenticator.optional)],
        )
        self.router.add_api_route(
            "/{event_id}",
            self.update_event,
            methods=["PUT"],
            response_model=APIResponse[Event],
            dependencies=organizer,
        )
        self.router.add_api_route(
            "/{event_id}",
            self.delete_event,
            methods=["DELETE"],
            response_model=APIResponse[None],
            dependencies=organizer,
        )
        self.router.add_api_route(
            "/{event_id}/publish",
            self.publish_event,
            methods=["PATCH"],
            response_model=APIResponse[Event],
            dependencies=organizer,
        )
