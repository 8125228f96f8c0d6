# order_pipeline.py
"""
Storefront API and order fulfillment orchestrator.

`OrderPipelineHandler` carries the business logic; the router at the bottom
is a thin FastAPI wrapper around it.

Canvas order lifecycle, keyed by the Stripe checkout session id:

  /checkout            creates the Stripe session and stashes the design as a
                       PendingOrder.
  /webhooks/payment    on checkout.session.completed: upload to Printful,
                       create a draft order, best-effort mockup, then write the
                       CompletedOrder and drop the PendingOrder.
  /order-status        polled by the confirmation page until the
                       CompletedOrder shows up.

Once the signature and event type checks pass, the webhook always answers
200 so Stripe does not redeliver and duplicate the Printful order. A failed
upload or order creation leaves the PendingOrder in place, flagged
`needs_retry` with the failing step, for manual follow-up. Once the draft
order exists its id is kept on the PendingOrder, so a redelivery resumes
after it instead of ordering again.
"""

import base64
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, ConfigDict, Field

from mapmarked.errors import (
    GatewayUnavailable,
    InvalidImage,
    InvalidSignature,
    MockupTimedOut,
    ProviderError,
    RenderFailed,
    WebhookMisconfigured,
    log_and_raise,
)
from mapmarked.interface import (
    get_mockup_storage,
    get_order_storage,
    get_payment_gateway,
    get_printful_client,
    get_renderer_client,
    get_settings,
)
from mapmarked.mockup_storage import MockupStorage
from mapmarked.order_storage import CompletedOrder, OrderStorage, PendingOrder, STATUS_NEEDS_RETRY
from mapmarked.payments import PaymentGateway, stripe_field
from mapmarked.printful import PrintfulClient, Recipient
from mapmarked.products import (
    CANVAS,
    DOWNLOAD_PRICES,
    canvas_line_description,
    canvas_line_name,
    fulfillment_product_label,
    print_filename,
)
from mapmarked.rate_limit import rate_limited
from mapmarked.renderer import RendererClient, RenderParams
from mapmarked.sanitize import (
    decode_image_data_url,
    sanitize_text,
    sanitize_theme_id,
    validate_coordinates,
    validate_detail_line_type,
    validate_focus_point,
    validate_hosted_image_url,
    validate_price_type,
    validate_return_url,
    validate_zoom,
)
from mapmarked.settings import Settings

log = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"


# --- Request Models ---

class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CheckoutRequest(_CamelModel):
    city_name: Any = Field(None, alias="cityName")
    state_name: Any = Field(None, alias="stateName")
    theme_name: Any = Field(None, alias="themeName")
    image_data_url: Optional[str] = Field(None, alias="imageDataUrl")
    image_url: Optional[str] = Field(None, alias="imageUrl")  # already-hosted render


class DownloadCheckoutRequest(_CamelModel):
    price_type: Any = Field(None, alias="priceType")
    return_url: Optional[str] = Field(None, alias="returnUrl")


class MockupRequest(_CamelModel):
    image_data_url: Optional[str] = Field(None, alias="imageDataUrl")
    filename: Optional[str] = None


class GeneratePrintRequest(_CamelModel):
    center: Any = None
    zoom: Any = None
    theme_id: Any = Field(None, alias="themeId")
    city_name: Any = Field(None, alias="cityName")
    state_name: Any = Field(None, alias="stateName")
    coordinates: Any = None
    focus_point: Any = Field(None, alias="focusPoint")
    detail_line_type: Any = Field("coordinates", alias="detailLineType")
    session_id: Optional[str] = Field(None, alias="sessionId")


# --- Helpers ---

def recipient_from_session(session: Any) -> Optional[Recipient]:
    """
    Builds the Printful recipient from a retrieved Checkout session.
    Returns None when the session carries no shipping address.
    """
    shipping = stripe_field(session, "shipping_details")
    if not shipping:
        # newer API versions nest it under collected_information
        shipping = stripe_field(stripe_field(session, "collected_information"), "shipping_details")
    address = stripe_field(shipping, "address")
    if not address:
        return None

    customer = stripe_field(session, "customer_details")
    return Recipient(
        name=stripe_field(shipping, "name") or stripe_field(customer, "name") or "Customer",
        address1=stripe_field(address, "line1") or "",
        address2=stripe_field(address, "line2") or None,
        city=stripe_field(address, "city") or "",
        state_code=stripe_field(address, "state") or "",
        country_code=stripe_field(address, "country") or "US",
        zip=stripe_field(address, "postal_code") or "",
        email=stripe_field(customer, "email") or None,
    )


def _is_remote_url(value: str) -> bool:
    return value.startswith(("http://", "https://"))


# ===================================================================
# ORDER PIPELINE HANDLER
# ===================================================================

class OrderPipelineHandler:

    def __init__(
        self,
        storage: OrderStorage,
        gateway: PaymentGateway,
        printful: Optional[PrintfulClient] = None,
        mockups: Optional[MockupStorage] = None,
        renderer: Optional[RendererClient] = None,
        config: Optional[Settings] = None,
    ):
        self.storage = storage
        self.gateway = gateway
        self.printful = printful
        self.mockups = mockups
        self.renderer = renderer
        self.config = config or gateway.config

    def _base_url(self, request_base_url: str) -> str:
        if self.config.is_production:
            return self.config.PUBLIC_BASE_URL.rstrip("/")
        return request_base_url.rstrip("/")

    # --- Canvas checkout ---

    async def create_checkout(self, req: CheckoutRequest, request_base_url: str) -> Dict[str, str]:
        city_name = sanitize_text(req.city_name)
        state_name = sanitize_text(req.state_name)
        theme_name = sanitize_text(req.theme_name, max_length=50)

        image = req.image_data_url or req.image_url
        if image and _is_remote_url(image):
            if not validate_hosted_image_url(image, self.config.hosted_image_hosts):
                log.warning(f"Checkout rejected, image host not allowed: {image[:200]}")
                raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid image URL")
        elif image:
            try:
                decode_image_data_url(image)
            except InvalidImage as e:
                log.warning(f"Checkout rejected, bad image payload: {e}")
                raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid image format")

        base_url = self._base_url(request_base_url)
        log.info(f"Checkout baseUrl: {base_url} | APP_ENV: {self.config.APP_ENV}")

        line_item = {
            "price_data": {
                "currency": CANVAS.currency,
                "product_data": {
                    "name": canvas_line_name(city_name, state_name),
                    "description": canvas_line_description(theme_name),
                },
                "unit_amount": CANVAS.unit_amount_cents,
            },
            "quantity": 1,
        }
        shipping = {
            "shipping_address_collection": {"allowed_countries": CANVAS.shipping_countries},
            "shipping_options": [{
                "shipping_rate_data": {
                    "type": "fixed_amount",
                    "fixed_amount": {"amount": 0, "currency": CANVAS.currency},
                    "display_name": CANVAS.shipping_label,
                    "delivery_estimate": {
                        "minimum": {"unit": "business_day", "value": CANVAS.shipping_min_days},
                        "maximum": {"unit": "business_day", "value": CANVAS.shipping_max_days},
                    },
                },
            }],
        }

        try:
            session = await self.gateway.create_checkout_session(
                line_item,
                success_url=f"{base_url}/confirmation?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{base_url}/?canceled=true",
                metadata={"cityName": city_name, "stateName": state_name, "themeName": theme_name},
                mode="payment",
                shipping=shipping,
            )
        except GatewayUnavailable as e:
            log_and_raise(e, "Failed to create checkout session")

        if image:
            await self.storage.store_pending_order(session.session_id, PendingOrder(
                image_data=image,
                city_name=city_name,
                state_name=state_name,
                theme_name=theme_name,
            ))
            log.info(f"Pending order stored for session {session.session_id} ({city_name}, {state_name} / {theme_name})")
        else:
            log.warning(f"Checkout session {session.session_id} created without an image; no pending order stored.")

        return {"sessionId": session.session_id, "url": session.url}

    # --- Digital download checkout ---

    async def create_download_checkout(self, req: DownloadCheckoutRequest, request_base_url: str) -> Dict[str, str]:
        if not validate_price_type(req.price_type):
            raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid price type")

        if not self.config.STRIPE_SECRET_KEY.strip():
            log.error("STRIPE_SECRET_KEY is not configured")
            raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, "Payment system not configured")

        base_url = self._base_url(request_base_url)
        safe_return_url = validate_return_url(req.return_url, self.config.allowed_return_hosts) or base_url

        price = DOWNLOAD_PRICES[req.price_type]
        price_data: Dict[str, Any] = {
            "currency": "usd",
            "product_data": {"name": price.name, "description": price.description},
            "unit_amount": price.unit_amount_cents,
        }
        if price.recurring_interval:
            price_data["recurring"] = {"interval": price.recurring_interval}
        mode = "subscription" if price.recurring_interval else "payment"

        try:
            session = await self.gateway.create_checkout_session(
                {"price_data": price_data, "quantity": 1},
                success_url=f"{safe_return_url}?paid=true&type={req.price_type}&session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{safe_return_url}?canceled=true",
                metadata={"type": req.price_type},
                mode=mode,
            )
        except GatewayUnavailable as e:
            log_and_raise(e, "Failed to create checkout session")

        return {"url": session.url}

    # --- Payment webhook ---

    async def handle_payment_webhook(self, payload: bytes, sig_header: Optional[str]) -> Dict[str, bool]:
        """Verifies the event, then runs fulfillment for completed checkouts."""
        try:
            event = self.gateway.construct_webhook_event(payload, sig_header)
        except WebhookMisconfigured as e:
            log_and_raise(e, "Webhook processing unavailable")
        except InvalidSignature as e:
            log.warning(f"Webhook rejected: {e}")
            raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid signature")

        event_type = stripe_field(event, "type")
        if event_type != CHECKOUT_COMPLETED:
            log.info(f"Received unhandled Stripe event type: {event_type}")
            return {"received": True}

        session_id = stripe_field(stripe_field(stripe_field(event, "data"), "object"), "id")
        if not session_id:
            log.error(f"Stripe event {stripe_field(event, 'id')} has no session id.")
            raise HTTPException(status.HTTP_400_BAD_REQUEST, "Missing session id")
        log.info(f"Processing completed checkout: {session_id}")

        pending = await self.storage.get_pending_order(session_id)
        if pending is None:
            if await self.storage.get_completed_order(session_id) is not None:
                log.info(f"Session {session_id} already processed; ignoring redelivered webhook.")
            else:
                log.error(f"No pending order found for session: {session_id}")
            raise HTTPException(status.HTTP_400_BAD_REQUEST, "No order data found")
        if pending.status == STATUS_NEEDS_RETRY:
            log.warning(f"Retrying fulfillment for {session_id} (previously failed at {pending.failed_step}).")

        try:
            full_session = await self.gateway.retrieve_session(session_id)
        except GatewayUnavailable as e:
            await self._mark_failed(session_id, "retrieve_session", e)
            return {"received": True}

        recipient = recipient_from_session(full_session)
        if recipient is None:
            log.error(f"No shipping address in session: {session_id}")
            raise HTTPException(status.HTTP_400_BAD_REQUEST, "No shipping address")

        try:
            await self._fulfill(session_id, pending, recipient)
        except Exception as e:
            # acknowledged anyway; a non-2xx would make Stripe redeliver
            log.error(f"Error processing order {session_id}: {e}", exc_info=True)
            await self._mark_failed(session_id, "unexpected", e)

        return {"received": True}

    async def _fulfill(self, session_id: str, pending: PendingOrder, recipient: Recipient) -> None:
        if self.printful is None:
            raise RuntimeError("Printful client not configured")

        if pending.printful_order_id is not None:
            # an earlier delivery already placed the order; never place it twice
            order_id = pending.printful_order_id
            file_id = pending.printful_file_id
            log.info(f"Printful order {order_id} already exists for {session_id}; skipping upload and order.")
        else:
            filename = print_filename(pending.city_name)
            product_label = fulfillment_product_label(pending.city_name, pending.state_name, pending.theme_name)

            # 1. Upload (critical)
            try:
                uploaded = await self.printful.upload_file(pending.image_data, filename)
            except (ProviderError, InvalidImage) as e:
                await self._mark_failed(session_id, "upload", e)
                return

            # 2. Draft order (critical)
            try:
                order_id = await self.printful.create_order(uploaded.file_url, recipient, session_id, product_label)
            except ProviderError as e:
                await self._mark_failed(session_id, "create_order", e)
                return
            log.info(f"Printful order created: {order_id}")
            file_id = uploaded.file_id
            await self.storage.record_printful_order(session_id, order_id, file_id)

        # 3. Mockup (best effort, nothing here may abort the order)
        mockup_url = ""
        if file_id is not None:
            try:
                await self.printful.wait_for_file_ready(file_id)
                mockup_url = await self.printful.generate_mockup(file_id)
                log.info(f"Mockup generated: {mockup_url}")
            except Exception as e:
                log.error(f"Mockup generation failed (non-critical) for {session_id}: {e}", exc_info=True)
                mockup_url = ""
        if mockup_url and self.mockups is not None:
            try:
                mockup_url = await self.mockups.persist(mockup_url, session_id)
            except Exception as e:
                log.error(f"Mockup persist failed (non-critical) for {session_id}: {e}", exc_info=True)

        # 4. Publish result, then drop the pending entry
        await self.storage.store_completed_order(session_id, CompletedOrder(
            mockup_url=mockup_url,
            printful_order_id=order_id,
        ))
        await self.storage.delete_pending_order(session_id)
        log.info(f"Order processing complete for session: {session_id}")

    async def _mark_failed(self, session_id: str, step: str, error: BaseException) -> None:
        log.error(f"Fulfillment for {session_id} failed at '{step}': {error}", exc_info=error)
        try:
            await self.storage.mark_pending_failed(session_id, step, f"{type(error).__name__}: {error}")
        except Exception as e:
            log.error(f"Could not flag pending order {session_id} for retry: {e}", exc_info=True)

    # --- Order status ---

    async def get_order_status(self, session_id: Optional[str]) -> Dict[str, Any]:
        if not session_id:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, "Missing session_id")

        completed = await self.storage.get_completed_order(session_id)
        if completed is None:
            # not processed yet, failed, or never existed
            return {"status": "pending", "mockupUrl": None, "printfulOrderId": None}

        return {
            "status": "completed",
            "mockupUrl": completed.mockup_url,
            "printfulOrderId": completed.printful_order_id,
        }

    # --- Standalone mockup ---

    async def generate_mockup(self, req: MockupRequest) -> Dict[str, str]:
        if not req.image_data_url:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, "Missing imageDataUrl")
        try:
            decode_image_data_url(req.image_data_url)
        except InvalidImage as e:
            log.warning(f"Mockup rejected, bad image payload: {e}")
            raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid image format")

        if self.printful is None:
            raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")

        filename = sanitize_text(req.filename, max_length=120) or print_filename("mockup")
        try:
            uploaded = await self.printful.upload_file(req.image_data_url, filename, require_url=False)
        except ProviderError as e:
            log_and_raise(e, "File upload failed")

        try:
            mockup_url = await self.printful.generate_mockup(
                uploaded.file_id, max_attempts=self.config.STANDALONE_MOCKUP_MAX_ATTEMPTS
            )
        except MockupTimedOut as e:
            log_and_raise(e, "Mockup generation timed out")
        except ProviderError as e:
            log_and_raise(e, "Mockup generation failed")

        return {"mockupUrl": mockup_url}

    # --- Print render ---

    async def generate_print(self, req: GeneratePrintRequest) -> Dict[str, str]:
        if not validate_coordinates(req.center):
            raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid coordinates")
        if not validate_zoom(req.zoom):
            raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid zoom level")
        theme_id = sanitize_theme_id(req.theme_id)
        if theme_id is None:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid theme")
        if not validate_detail_line_type(req.detail_line_type):
            raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid detail line type")
        if not validate_focus_point(req.focus_point):
            raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid focus point")

        if self.renderer is None or not self.renderer.configured:
            log.error("RENDER_SERVER_URL or RENDER_SECRET not configured")
            raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, "Render service not configured")

        # watermark-free output only for verified purchases
        paid = bool(req.session_id) and await self.gateway.verify_payment(req.session_id)

        focus = req.focus_point or {}
        params = RenderParams(
            lng=req.center[0],
            lat=req.center[1],
            zoom=req.zoom,
            theme_id=theme_id,
            city=sanitize_text(req.city_name),
            state=sanitize_text(req.state_name),
            coordinates=sanitize_text(req.coordinates),
            detail_line_type=req.detail_line_type,
            paid=paid,
            focus_lat=focus.get("lat"),
            focus_lng=focus.get("lng"),
            focus_address=sanitize_text(focus.get("address"), max_length=200) or None,
        )

        try:
            image_bytes = await self.renderer.render(params)
        except RenderFailed as e:
            log_and_raise(e, "Failed to generate print")

        log.info(f"Print rendered for {params.city}, {params.state}: {len(image_bytes)} bytes (paid={paid})")
        return {"imageDataUrl": f"data:image/jpeg;base64,{base64.b64encode(image_bytes).decode('ascii')}"}


# ===================================================================
# FASTAPI ROUTER (Wrappers)
# ===================================================================
router = APIRouter(tags=["MapMarked Storefront"])


def get_handler(
    storage: OrderStorage = Depends(get_order_storage),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    printful: PrintfulClient = Depends(get_printful_client),
    mockups: MockupStorage = Depends(get_mockup_storage),
    renderer: RendererClient = Depends(get_renderer_client),
    config: Settings = Depends(get_settings),
) -> OrderPipelineHandler:
    return OrderPipelineHandler(storage, gateway, printful, mockups, renderer, config)


@router.post("/checkout", dependencies=[Depends(rate_limited("checkout"))])
async def checkout_endpoint(req: CheckoutRequest, request: Request, handler: OrderPipelineHandler = Depends(get_handler)):
    """Creates the $94 canvas checkout session."""
    return await handler.create_checkout(req, str(request.base_url))


@router.post("/create-checkout", dependencies=[Depends(rate_limited("checkout", scope="create-checkout"))])
async def create_checkout_endpoint(req: DownloadCheckoutRequest, request: Request, handler: OrderPipelineHandler = Depends(get_handler)):
    """Digital download checkout (single or subscription)."""
    return await handler.create_download_checkout(req, str(request.base_url))


@router.post("/webhooks/payment", dependencies=[Depends(rate_limited("webhook"))])
async def payment_webhook_endpoint(request: Request, handler: OrderPipelineHandler = Depends(get_handler)):
    """Handles Stripe payment webhooks."""
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    return await handler.handle_payment_webhook(payload, sig_header)


@router.get("/order-status", dependencies=[Depends(rate_limited("standard", scope="order-status"))])
async def order_status_endpoint(session_id: Optional[str] = Query(None), handler: OrderPipelineHandler = Depends(get_handler)):
    return await handler.get_order_status(session_id)


@router.post("/generate-mockup", dependencies=[Depends(rate_limited("expensive", scope="generate-mockup"))])
async def generate_mockup_endpoint(req: MockupRequest, handler: OrderPipelineHandler = Depends(get_handler)):
    return await handler.generate_mockup(req)


@router.post("/generate-print", dependencies=[Depends(rate_limited("expensive", scope="generate-print"))])
async def generate_print_endpoint(req: GeneratePrintRequest, handler: OrderPipelineHandler = Depends(get_handler)):
    return await handler.generate_print(req)


@router.get("/verify-payment", dependencies=[Depends(rate_limited("standard", scope="verify-payment"))])
async def verify_payment_endpoint(session_id: Optional[str] = Query(None), gateway: PaymentGateway = Depends(get_payment_gateway)):
    if not session_id:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Missing session_id")
    return {"paid": await gateway.verify_payment(session_id)}


@router.get("/public-config")
async def public_config_endpoint(config: Settings = Depends(get_settings)):
    """Browser-safe configuration (the public map tile token only)."""
    return {"mapboxToken": config.MAPBOX_TOKEN}


@router.get("/health")
async def health_endpoint():
    return {"status": "ok"}
