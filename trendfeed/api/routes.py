from __future__ import annotations

import secrets
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Header, Query
from structlog.contextvars import bind_contextvars, reset_contextvars

from trendfeed.dependencies import ServiceContainer, get_container
from trendfeed.errors import ForbiddenError, UnauthenticatedError
from trendfeed.models.contracts import (
    BulkSubscribeBody,
    BulkSubscribeResponse,
    BulkUnsubscribeBody,
    BulkUnsubscribeResponse,
    ChannelDiscoveryBody,
    ChannelHistoryResponse,
    ChannelListResponse,
    ChannelResponse,
    CredentialResponse,
    DiscoveryResponse,
    ErrorResponse,
    KeywordDiscoveryBody,
    OkResponse,
    QuotaResetResponse,
    RefreshResponse,
    ServerApiKeyBody,
    ServerUsageResponse,
    SubscribeChannelBody,
    SubscriptionListResponse,
    SubscriptionResponse,
    UserApiKeyBody,
    UserUsageResponse,
    bulk_subscribe_response,
    bulk_unsubscribe_response,
    channel_list_response,
    channel_out,
    credential_out,
    discovery_response,
    history_out,
    quota_reset_response,
    refresh_response,
    subscription_list_response,
    subscription_out,
    user_usage_response,
)
from trendfeed.repositories.channel_repository import ListOrderBy, ListQuery, SortOrder
from trendfeed.services.discovery_service import deadline_after


def _error_responses(*status_codes: int) -> dict[int | str, dict[str, Any]]:
    return {status_code: {"model": ErrorResponse} for status_code in status_codes}


router = APIRouter(responses=_error_responses(400, 401, 404, 429, 502, 503))

Container = Annotated[ServiceContainer, Depends(get_container)]


def current_user_id(
    x_user_id: Annotated[str | None, Header(alias="X-User-Id")] = None,
) -> str:
    """The upstream gateway authenticates callers and forwards their id in `X-User-Id`."""
    if x_user_id is None or not x_user_id.strip():
        raise UnauthenticatedError("Missing X-User-Id header.")
    return x_user_id.strip()


UserId = Annotated[str, Depends(current_user_id)]


def require_admin(
    container: Container,
    x_admin_token: Annotated[str | None, Header(alias="X-Admin-Token")] = None,
) -> None:
    """Without a configured admin token the gateway alone guards `/admin`."""
    expected = container.settings.admin_token
    if expected is None:
        return
    supplied = (x_admin_token or "").strip()
    if not secrets.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8")):
        raise ForbiddenError("Missing or invalid X-Admin-Token header.")


def list_query(
    order_by: ListOrderBy = "created_at",
    order: SortOrder = "desc",
    cursor: Annotated[int | None, Query(ge=1)] = None,
    take: Annotated[int, Query(ge=1, le=50)] = 20,
) -> ListQuery:
    return ListQuery(order_by=order_by, order=order, cursor=cursor, take=take)


Listing = Annotated[ListQuery, Depends(list_query)]

admin_router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin)],
    responses=_error_responses(403),
)


@router.post(
    "/discovery/channels",
    response_model=DiscoveryResponse,
    tags=["discovery"],
    operation_id="discover_by_channels",
)
def discover_by_channels(
    body: ChannelDiscoveryBody,
    user_id: UserId,
    container: Container,
) -> DiscoveryResponse:
    context_tokens = bind_contextvars(discovery_mode="channels", user_id=user_id)
    try:
        result = container.discovery_service.discover_by_channels(
            user_id,
            body.to_request(),
            is_cancelled=deadline_after(container.settings.discovery_timeout_seconds),
        )
        return discovery_response(result)
    finally:
        reset_contextvars(**context_tokens)


@router.post(
    "/discovery/keyword",
    response_model=DiscoveryResponse,
    tags=["discovery"],
    operation_id="discover_by_keyword",
)
def discover_by_keyword(
    body: KeywordDiscoveryBody,
    user_id: UserId,
    container: Container,
) -> DiscoveryResponse:
    context_tokens = bind_contextvars(discovery_mode="keyword", user_id=user_id)
    try:
        result = container.discovery_service.discover_by_keyword(
            user_id,
            body.to_request(),
            is_cancelled=deadline_after(container.settings.discovery_timeout_seconds),
        )
        return discovery_response(result)
    finally:
        reset_contextvars(**context_tokens)


@router.post(
    "/channels",
    response_model=SubscriptionResponse,
    tags=["channels"],
    operation_id="subscribe_channel",
)
def subscribe_channel(
    body: SubscribeChannelBody,
    user_id: UserId,
    container: Container,
) -> SubscriptionResponse:
    subscription = container.channel_service.subscribe(
        user_id,
        handle=body.handle,
        channel_id=body.channel_id,
    )
    return SubscriptionResponse(subscription=subscription_out(subscription))


@router.get(
    "/channels",
    response_model=ChannelListResponse,
    tags=["channels"],
    operation_id="list_channels",
)
def list_channels(query: Listing, container: Container) -> ChannelListResponse:
    return channel_list_response(container.channel_service.list_channels(query))


@router.get(
    "/channels/{channel_id}",
    response_model=ChannelResponse,
    tags=["channels"],
    operation_id="get_channel",
)
def get_channel(channel_id: str, container: Container) -> ChannelResponse:
    return ChannelResponse(channel=channel_out(container.channel_service.get_channel(channel_id)))


@router.get(
    "/channels/{channel_id}/history",
    response_model=ChannelHistoryResponse,
    tags=["channels"],
    operation_id="get_channel_history",
)
def get_channel_history(channel_id: str, container: Container) -> ChannelHistoryResponse:
    record, history = container.channel_service.channel_history(channel_id)
    return ChannelHistoryResponse(
        channel=channel_out(record),
        history=[history_out(entry) for entry in history],
    )


@router.get(
    "/subscriptions",
    response_model=SubscriptionListResponse,
    tags=["channels"],
    operation_id="list_subscriptions",
)
def list_subscriptions(
    user_id: UserId,
    query: Listing,
    container: Container,
) -> SubscriptionListResponse:
    return subscription_list_response(container.channel_service.list_subscriptions(user_id, query))


@router.post(
    "/subscriptions",
    response_model=BulkSubscribeResponse,
    tags=["channels"],
    operation_id="subscribe_channels",
)
def subscribe_channels(
    body: BulkSubscribeBody,
    user_id: UserId,
    container: Container,
) -> BulkSubscribeResponse:
    return bulk_subscribe_response(container.channel_service.subscribe_many(user_id, body.handles))


@router.delete(
    "/subscriptions",
    response_model=BulkUnsubscribeResponse,
    tags=["channels"],
    operation_id="unsubscribe_channels",
)
def unsubscribe_channels(
    body: BulkUnsubscribeBody,
    user_id: UserId,
    container: Container,
) -> BulkUnsubscribeResponse:
    return bulk_unsubscribe_response(
        container.channel_service.unsubscribe_many(user_id, body.subscription_ids)
    )


@router.delete(
    "/subscriptions/{channel_id}",
    response_model=OkResponse,
    tags=["channels"],
    operation_id="unsubscribe_channel",
)
def unsubscribe_channel(channel_id: str, user_id: UserId, container: Container) -> OkResponse:
    container.channel_service.unsubscribe(user_id, channel_id)
    return OkResponse()


@router.put(
    "/credentials/me",
    response_model=CredentialResponse,
    tags=["credentials"],
    operation_id="save_user_credential",
)
def save_user_credential(
    body: UserApiKeyBody,
    user_id: UserId,
    container: Container,
) -> CredentialResponse:
    record = container.credential_service.register_user_key(user_id, body.api_key)
    return CredentialResponse(credential=credential_out(record))


@router.delete(
    "/credentials/me",
    response_model=OkResponse,
    tags=["credentials"],
    operation_id="delete_user_credential",
)
def delete_user_credential(user_id: UserId, container: Container) -> OkResponse:
    container.credential_service.delete_user_key(user_id)
    return OkResponse()


@router.get(
    "/credentials/me/usage",
    response_model=UserUsageResponse,
    tags=["credentials"],
    operation_id="get_user_usage",
)
def get_user_usage(user_id: UserId, container: Container) -> UserUsageResponse:
    return user_usage_response(container.credential_service.user_usage(user_id))


@admin_router.put(
    "/credentials/server",
    response_model=CredentialResponse,
    operation_id="save_server_credential",
)
def save_server_credential(body: ServerApiKeyBody, container: Container) -> CredentialResponse:
    record = container.credential_service.upsert_server_key(
        body.name,
        body.api_key,
        is_active=body.is_active,
    )
    return CredentialResponse(credential=credential_out(record))


@admin_router.delete(
    "/credentials/server/{name}",
    response_model=OkResponse,
    operation_id="revoke_server_credential",
)
def revoke_server_credential(name: str, container: Container) -> OkResponse:
    container.credential_service.revoke_server_key(name)
    return OkResponse()


@admin_router.get(
    "/credentials/server/usage",
    response_model=ServerUsageResponse,
    operation_id="get_server_usage",
)
def get_server_usage(container: Container) -> ServerUsageResponse:
    return ServerUsageResponse(
        credentials=[credential_out(record) for record in container.credential_service.server_usage()]
    )


@admin_router.post(
    "/quota/reset",
    response_model=QuotaResetResponse,
    operation_id="reset_quota",
)
def reset_quota(container: Container) -> QuotaResetResponse:
    return quota_reset_response(container.credential_service.reset_quota())


@admin_router.post(
    "/channels/refresh",
    response_model=RefreshResponse,
    operation_id="refresh_channels",
)
def refresh_channels(container: Container) -> RefreshResponse:
    return refresh_response(container.channel_refresh_service.refresh_all_channels())


router.include_router(admin_router)
