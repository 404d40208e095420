# standard libraries
import os
from typing import Annotated

# observability
from observability_sdk.bootstrap import ObservabilityHandle, configure_observability, setup_observability
from observability_sdk.settings import ObservabilitySettings, load_settings

# fastapi imports
from fastapi import Depends, FastAPI, HTTPException, Request


class InsufficientStock(Exception):
    pass


def get_handle(request: Request) -> ObservabilityHandle:
    return request.app.state.observability


def create_app(settings: ObservabilitySettings | None = None, **configure_options) -> FastAPI:
    """Example service; run with ``uvicorn --factory observability_sdk.main:create_app``."""
    if settings is None:
        settings = load_settings(os.environ.get("OBSERVABILITY_CONFIG_FILE"))
    handle = configure_observability(settings, **configure_options)

    app = FastAPI(title=handle.settings.service_name, version=handle.settings.service_version)
    app.state.observability = handle
    setup_observability(app, handle)

    orders = {42: dict(id=42, item="keyboard", quantity=1)}
    stock = {"keyboard": 3}

    @app.get("/")
    async def root() -> str:
        return "ok"

    @app.get("/orders/{order_id}")
    async def get_order(
        order_id: int,
        handle: Annotated[ObservabilityHandle, Depends(get_handle)]) -> dict:

        order = orders.get(order_id)
        if order is None:
            raise HTTPException(status_code=404, detail="Order not found")

        if handle.logging is not None:
            handle.logging.logger.info("order_read", order_id=order_id)
        return order

    @app.post("/orders")
    async def create_order(payload: dict) -> dict:
        item = payload.get("item")
        quantity = int(payload.get("quantity", 1))

        if stock.get(item, 0) < quantity:
            raise InsufficientStock("InsufficientStock")

        order_id = max(orders) + 1
        orders[order_id] = dict(id=order_id, item=item, quantity=quantity)
        stock[item] -= quantity
        return orders[order_id]

    return app
