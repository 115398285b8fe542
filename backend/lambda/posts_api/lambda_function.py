"""posts_api/lambda_function.py

Lambda API for posts on upscrolled-lite: create text/media posts, list the
feed newest-first with cursor pagination, and like posts.

Routes (via API Gateway HTTP API):
    POST    /api/v1/posts                       — create post
    GET     /api/v1/posts?limit=&cursor=        — list posts
    POST    /api/v1/likes                       — like a post (idempotent)
    OPTIONS /api/v1/posts | /api/v1/likes       — CORS preflight

Storage:
    POSTS_TABLE   hash key post_id (S); GSI `feed-created-index` on
                  feed (S, constant "all") + created_at (S).
    LIKES_TABLE   hash key post_id (S), range key user_id (S).

Events:
    A `post.created` / `New Post Created` event is put on EVENT_BUS_NAME
    after each post is stored. Publishing is best effort.

Environment variables:
    POSTS_TABLE            default: posts
    LIKES_TABLE            default: likes
    POSTS_FEED_INDEX       default: feed-created-index
    EVENT_BUS_NAME         default: NewPostBus
    RATE_LIMIT_TABLE       fixed-window counters; empty disables the gate
    COGNITO_USER_POOL_ID / COGNITO_CLIENT_ID
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import uuid
from typing import Any, Dict, List, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from upscrolled_shared.auth import _authenticate, _subject
from upscrolled_shared.aws_clients import _get_ddb, _get_eb
from upscrolled_shared.errors import ApiError, NotFoundError, UpstreamError, ValidationError
from upscrolled_shared.http_utils import (
    _api_error_response,
    _error,
    _json_body,
    _path_method,
    _preflight,
    _response,
)
from upscrolled_shared.rate_limit import RATE_LIMIT_POLICIES, enforce_rate_limit
from upscrolled_shared.serialization import _deserialize, _serialize, _serialize_item, iso_millis

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

POSTS_TABLE = os.environ.get("POSTS_TABLE", "posts")
LIKES_TABLE = os.environ.get("LIKES_TABLE", "likes")
POSTS_FEED_INDEX = os.environ.get("POSTS_FEED_INDEX", "feed-created-index")
EVENT_BUS_NAME = os.environ.get("EVENT_BUS_NAME", "NewPostBus")
EVENT_SOURCE_POST_CREATED = "post.created"
EVENT_DETAIL_TYPE_POST_CREATED = "New Post Created"
FEED_PARTITION = "all"
UPLOAD_KEY_PREFIX = "uploads"
MAX_TITLE_LENGTH = 200
MAX_CONTENT_LENGTH = 10000
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
MEDIA_TYPES = {"image", "video"}
_CURSOR_FIELDS = ("post_id", "feed", "created_at")

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def _body(event: Dict[str, Any]) -> Dict[str, Any]:
    try:
        return _json_body(event)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _validate_post_body(body: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    """Return the post item to store, or raise ValidationError."""
    title = body.get("title")
    content = body.get("content")
    if not isinstance(title, str) or not title.strip() or not isinstance(content, str) or not content.strip():
        raise ValidationError("Title and content are required")
    title = title.strip()
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(f"Title exceeds {MAX_TITLE_LENGTH} characters")
    if len(content) > MAX_CONTENT_LENGTH:
        raise ValidationError(f"Content exceeds {MAX_CONTENT_LENGTH} characters")

    media_file_id = body.get("mediaFileId")
    media_key = body.get("mediaKey")
    media_type = body.get("mediaType")
    media: Optional[Dict[str, str]] = None
    if media_file_id or media_key or media_type:
        if not (media_file_id and media_key and media_type):
            raise ValidationError(
                "When including media, mediaFileId, mediaKey, and mediaType are all required"
            )
        if not all(isinstance(v, str) for v in (media_file_id, media_key, media_type)):
            raise ValidationError("mediaFileId, mediaKey, and mediaType must be strings")
        if media_type not in MEDIA_TYPES:
            raise ValidationError("mediaType must be one of: image, video")
        if not media_key.startswith(f"{UPLOAD_KEY_PREFIX}/{user_id}/{media_file_id}."):
            raise ValidationError("mediaKey does not reference one of your uploads")
        media = {"fileId": media_file_id, "key": media_key, "type": media_type}

    now = iso_millis()
    return {
        "post_id": str(uuid.uuid4()),
        "user_id": user_id,
        "title": title,
        "content": content,
        "media": media,
        "feed": FEED_PARTITION,
        "created_at": now,
        "updated_at": now,
    }


def _parse_limit(raw: Any) -> int:
    if raw in (None, ""):
        return DEFAULT_PAGE_SIZE
    try:
        limit = int(str(raw))
    except ValueError as exc:
        raise ValidationError("limit must be an integer") from exc
    if limit < 1:
        raise ValidationError("limit must be at least 1")
    return min(limit, MAX_PAGE_SIZE)


def _encode_cursor(item: Dict[str, Any]) -> str:
    key = {name: item[name] for name in _CURSOR_FIELDS}
    raw = json.dumps(key, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _decode_cursor(cursor: str) -> Dict[str, Any]:
    """Cursor -> DynamoDB ExclusiveStartKey."""
    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        key = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise ValidationError("Invalid cursor") from exc
    if (
        not isinstance(key, dict)
        or set(key) != set(_CURSOR_FIELDS)
        or not all(isinstance(v, str) and v for v in key.values())
    ):
        raise ValidationError("Invalid cursor")
    return {name: _serialize(value) for name, value in key.items()}


def _post_public(item: Dict[str, Any]) -> Dict[str, Any]:
    out = {
        "postId": item.get("post_id"),
        "userId": item.get("user_id"),
        "title": item.get("title"),
        "content": item.get("content"),
        "createdAt": item.get("created_at"),
        "updatedAt": item.get("updated_at"),
    }
    if item.get("media"):
        out["media"] = item["media"]
    return out


# ---------------------------------------------------------------------------
# Persistence / events
# ---------------------------------------------------------------------------


def _put_post(item: Dict[str, Any]) -> None:
    try:
        _get_ddb().put_item(
            TableName=POSTS_TABLE,
            Item=_serialize_item(item),
            ConditionExpression="attribute_not_exists(post_id)",
        )
    except (BotoCoreError, ClientError) as exc:
        logger.error("put_item failed for post %s: %s", item.get("post_id"), exc)
        raise UpstreamError("Database write failed.") from exc


def _get_post(post_id: str) -> Optional[Dict[str, Any]]:
    try:
        resp = _get_ddb().get_item(
            TableName=POSTS_TABLE,
            Key={"post_id": _serialize(post_id)},
        )
    except (BotoCoreError, ClientError) as exc:
        logger.error("get_item failed for post %s: %s", post_id, exc)
        raise UpstreamError("Database read failed.") from exc
    raw = resp.get("Item")
    return _deserialize(raw) if raw else None


def _query_feed(
    limit: int,
    exclusive_start_key: Optional[Dict[str, Any]],
) -> Tuple[List[Dict[str, Any]], Optional[Dict[str, Any]]]:
    """One feed page plus the LastEvaluatedKey (set when DynamoDB stopped early)."""
    kwargs: Dict[str, Any] = {
        "TableName": POSTS_TABLE,
        "IndexName": POSTS_FEED_INDEX,
        "KeyConditionExpression": "feed = :feed",
        "ExpressionAttributeValues": {":feed": _serialize(FEED_PARTITION)},
        "ScanIndexForward": False,
        "Limit": limit,
    }
    if exclusive_start_key:
        kwargs["ExclusiveStartKey"] = exclusive_start_key
    try:
        resp = _get_ddb().query(**kwargs)
    except (BotoCoreError, ClientError) as exc:
        logger.error("Feed query failed: %s", exc)
        raise UpstreamError("Database read failed.") from exc
    items = [_deserialize(raw) for raw in resp.get("Items", [])]
    last_key = resp.get("LastEvaluatedKey")
    return items, _deserialize(last_key) if last_key else None


def _publish_post_created(user_id: str, title: str, post_id: str) -> None:
    detail = {"userId": user_id, "title": title, "postId": post_id}
    try:
        resp = _get_eb().put_events(Entries=[{
            "Source": EVENT_SOURCE_POST_CREATED,
            "DetailType": EVENT_DETAIL_TYPE_POST_CREATED,
            "Detail": json.dumps(detail),
            "EventBusName": EVENT_BUS_NAME,
        }])
    except (BotoCoreError, ClientError) as exc:
        logger.error("EventBridge put_events failed: %s", exc)
        return
    if resp.get("FailedEntryCount"):
        logger.warning("EventBridge rejected post.created for %s: %s", post_id, resp.get("Entries"))


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------


def _handle_create_post(event: Dict[str, Any], claims: Dict[str, Any]) -> Dict[str, Any]:
    """POST /posts — store the post, then announce it."""
    enforce_rate_limit(event, claims, RATE_LIMIT_POLICIES["write"])
    user_id = _subject(claims)
    item = _validate_post_body(_body(event), user_id)
    _put_post(item)
    _publish_post_created(user_id, item["title"], item["post_id"])

    logger.info("Post created: post_id=%s user=%s media=%s", item["post_id"], user_id, bool(item["media"]))
    payload: Dict[str, Any] = {
        "success": True,
        "ok": True,
        "message": "Post created successfully",
        "postId": item["post_id"],
    }
    if item["media"]:
        payload["media"] = item["media"]
    return _response(201, payload)


def _handle_list_posts(event: Dict[str, Any], claims: Dict[str, Any]) -> Dict[str, Any]:
    """GET /posts — newest first.

    `limit + 1` rows are read to detect another page. A query cut short by the
    1 MB response cap also counts as another page.
    """
    params = event.get("queryStringParameters") or {}
    limit = _parse_limit(params.get("limit"))
    cursor = params.get("cursor")
    start_key = _decode_cursor(cursor) if cursor else None

    items, last_key = _query_feed(limit + 1, start_key)
    next_cursor: Optional[str] = None
    if len(items) > limit:
        items = items[:limit]
        next_cursor = _encode_cursor(items[-1])
    elif last_key:
        next_cursor = _encode_cursor(items[-1] if items else last_key)
    has_more = next_cursor is not None

    return _response(200, {
        "success": True,
        "posts": [_post_public(item) for item in items],
        "pagination": {
            "limit": limit,
            "nextCursor": next_cursor,
            "hasMore": has_more,
        },
    })


def _handle_like_post(event: Dict[str, Any], claims: Dict[str, Any]) -> Dict[str, Any]:
    """POST /likes — one like per (user, post)."""
    enforce_rate_limit(event, claims, RATE_LIMIT_POLICIES["write"])
    user_id = _subject(claims)
    post_id = _body(event).get("postId")
    if not isinstance(post_id, str) or not post_id.strip():
        raise ValidationError("postId is required")
    post_id = post_id.strip()

    if _get_post(post_id) is None:
        raise NotFoundError("Post not found")

    already_liked = False
    try:
        _get_ddb().put_item(
            TableName=LIKES_TABLE,
            Item=_serialize_item({"post_id": post_id, "user_id": user_id, "created_at": iso_millis()}),
            ConditionExpression="attribute_not_exists(post_id)",
        )
    except ClientError as exc:
        if exc.response.get("Error", {}).get("Code") != "ConditionalCheckFailedException":
            logger.error("put_item failed for like %s/%s: %s", post_id, user_id, exc)
            raise UpstreamError("Database write failed.") from exc
        already_liked = True
    except BotoCoreError as exc:
        logger.error("put_item failed for like %s/%s: %s", post_id, user_id, exc)
        raise UpstreamError("Database write failed.") from exc

    return _response(200, {
        "success": True,
        "ok": True,
        "message": "Post liked successfully",
        "alreadyLiked": already_liked,
    })


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    method, path = _path_method(event)

    if method == "OPTIONS":
        return _preflight()

    claims, auth_err = _authenticate(event)
    if auth_err:
        return auth_err

    route_path = path.rstrip("/")
    if method == "POST" and route_path.endswith("/posts"):
        handler, fallback = _handle_create_post, "Failed to create post"
    elif method == "GET" and route_path.endswith("/posts"):
        handler, fallback = _handle_list_posts, "Failed to fetch posts"
    elif method == "POST" and route_path.endswith("/likes"):
        handler, fallback = _handle_like_post, "Failed to like post"
    else:
        return _error(404, f"Route not found: {method} {path}")

    try:
        return handler(event, claims)
    except ApiError as exc:
        return _api_error_response(exc)
    except Exception:
        logger.exception("Unhandled error on %s %s", method, path)
        return _error(500, fallback)
