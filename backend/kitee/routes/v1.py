"""
Kitee API - v1 Route Groups
=============================

What:  The four route groups mounted under ``/v1``: users, forms,
       responses and insights.
How:   Each group is its own APIRouter over the MongoDB collection of the
       same name. They share one listing endpoint; everything a group
       needs from the database goes through ``Depends(get_database)`` so a
       database outage fails these requests with 503 and nothing else.

Mount points (see ``ROUTE_GROUPS``):
    /v1/users  /v1/forms  /v1/responses  /v1/insights
"""

import logging
from typing import Any, Dict, Mapping

from bson import ObjectId
from fastapi import APIRouter, Depends, Query
from fastapi.encoders import jsonable_encoder
from pymongo.asynchronous.database import AsyncDatabase

from kitee.database import get_database
from kitee.schemas.common import CollectionResponse, ErrorResponse

logger = logging.getLogger(__name__)


def serialize_document(document: Mapping[str, Any]) -> Dict[str, Any]:
    """Make a BSON document JSON-safe (ObjectIds become strings)."""
    return jsonable_encoder(dict(document), custom_encoder={ObjectId: str})


def collection_router(collection: str) -> APIRouter:
    """Build the route group backed by ``collection``."""
    router = APIRouter(tags=[collection.capitalize()])

    @router.get(
        "",
        response_model=CollectionResponse,
        responses={503: {"description": "Database unavailable", "model": ErrorResponse}},
        summary=f"List {collection}",
    )
    async def list_documents(
        limit: int = Query(default=20, ge=1, le=100, description="Maximum documents returned"),
        db: AsyncDatabase = Depends(get_database),
    ) -> CollectionResponse:
        documents = await db[collection].find().limit(limit).to_list(length=limit)
        logger.debug("Listed %d %s", len(documents), collection)
        return CollectionResponse(
            success=True,
            data=[serialize_document(doc) for doc in documents],
        )

    return router


users = collection_router("users")
forms = collection_router("forms")
responses = collection_router("responses")
insights = collection_router("insights")

ROUTE_GROUPS: Mapping[str, APIRouter] = {
    "/v1/users": users,
    "/v1/forms": forms,
    "/v1/responses": responses,
    "/v1/insights": insights,
}
