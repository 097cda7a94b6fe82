from fastapi import APIRouter, status

from ticketing import __version__
from ticketing.core import APIError, APIResponse
from ticketing.entities import Event


class UtilController():
    """
    Root page and health check
    """

    def __init__(self, root_router: APIRouter, app_name: str):
        self.root_router = root_router
        self.app_name = app_name

        self._init_router()

    def root_page(self):
        """
        Root page. Shows information about the API
        """
        return APIResponse(success=True,
                           message=self.app_name,
                           data={
                               "version": __version__,
                               "docs": "/docs",
                               "api_prefix": "/api/v1",
                               "techstack": [
                                   "FastAPI", "Pydantic", "Pydantic Settings",
                                   "Beanie", "MongoDB (PyMongo)", "Python"
                               ]
                           })

    async def health_check(self):
        """
        Health check to mongo
        """
        try:
            await Event.find_one({})
        except Exception:
            raise APIError(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                           error_code="MONGO_CONNECTION_ERROR")

        return APIResponse(success=True, message="health check successful")

    def _init_router(self):
        self.root_router.add_api_route("/",
                                       self.root_page,
                                       methods=["GET"],
                                       response_model=APIResponse[dict])
        self.root_router.add_api_route("/health",
                                       self.health_check,
                                       methods=["GET"],
                                       response_model=APIResponse[None])
