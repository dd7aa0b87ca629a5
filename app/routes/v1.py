from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, File, Form, HTTPException, Request, UploadFile

from app.services.cart_advisor import MAX_CART_PRODUCTS
from app.services.chat import InvalidChatRequest
from app.services.feed import ProfileNotFound
from app.services.runtime import Runtime
from app.services.vision import decode_image_ref


router = APIRouter()

logger = logging.getLogger("glowup-agent.v1")

MAX_PHOTOS = 6


def _runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _optional_str(*values: Any) -> Optional[str]:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


@router.post("/chat")
async def chat(request: Request, body: dict[str, Any] = Body(...)):
    runtime = _runtime(request)
    user_id = _optional_str(body.get("userId"), body.get("user_id"))
    conversation_id = _optional_str(body.get("conversationId"), body.get("conversation_id"))

    try:
        reply = await runtime.chat.respond(
            user_id=user_id,
            conversation_id=conversation_id,
            messages=body.get("messages"),
        )
    except InvalidChatRequest as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    payload: dict[str, Any] = {
        "success": True,
        "message": reply.message,
        "products": reply.products,
        "product_map": reply.product_map,
        "resolution": {
            "state": reply.state.value,
            "rounds": reply.rounds,
            "side_effects": reply.side_effects,
        },
    }
    if reply.title:
        payload["title"] = reply.title
    return payload


async def _analyze_and_store(runtime: Runtime, images: list[bytes], user_id: Optional[str]) -> dict[str, Any]:
    signal, analyzer = await runtime.vision.analyze(images)
    saved = False
    if signal is not None and user_id:
        try:
            saved = await runtime.profiles.save_image_analysis(user_id, signal.as_profile_analysis())
        except Exception as exc:
            logger.warning("image_analysis_save_failed user_id=%s err=%s", user_id, exc)
    logger.info("skin_analyze images=%d analyzer=%s saved=%s", len(images), analyzer, saved)
    return {
        "success": True,
        "signal": signal.model_dump() if signal is not None else None,
        "analyzer": analyzer,
        "saved": saved,
    }


@router.post("/skin/analyze")
async def skin_analyze(request: Request, body: dict[str, Any] = Body(...)):
    photos = body.get("photos")
    if photos is None:
        photos = body.get("images")
    if not isinstance(photos, list):
        raise HTTPException(status_code=400, detail="`photos` must be a list")
    if len(photos) > MAX_PHOTOS:
        raise HTTPException(status_code=400, detail="Too many photos")

    images = [raw for raw in (decode_image_ref(p) for p in photos) if raw]
    user_id = _optional_str(body.get("userId"), body.get("user_id"))
    return await _analyze_and_store(_runtime(request), images, user_id)


@router.post("/skin/analyze/upload")
async def skin_analyze_upload(
    request: Request,
    photos: list[UploadFile] = File(...),
    user_id: Optional[str] = Form(default=None),
):
    if len(photos) > MAX_PHOTOS:
        raise HTTPException(status_code=400, detail="Too many photos")
    images = [blob for blob in [await p.read() for p in photos] if blob]
    return await _analyze_and_store(_runtime(request), images, _optional_str(user_id))


@router.get("/feed/{user_id}")
async def home_feed(request: Request, user_id: str):
    try:
        return await _runtime(request).feed.build(user_id)
    except ProfileNotFound as exc:
        raise HTTPException(status_code=404, detail="No skin profile found; complete onboarding first") from exc


@router.post("/cart/analyze")
async def cart_analyze(request: Request, body: dict[str, Any] = Body(...)):
    user_id = _optional_str(body.get("userId"), body.get("user_id"))
    product_ids = body.get("productIds")
    if product_ids is None:
        product_ids = body.get("product_ids")
    if not user_id or not isinstance(product_ids, list):
        raise HTTPException(status_code=400, detail="Missing required fields")
    if len(product_ids) > MAX_CART_PRODUCTS:
        raise HTTPException(status_code=400, detail="Too many products")
    ids = [pid for pid in product_ids if isinstance(pid, str)]
    return await _runtime(request).cart_advisor.analyze(user_id, ids)
