from ragsync.services.handlers.registry import HandlerRegistry, HandlerRegistryError, registry


def register_default_handlers(feeds=None, target: HandlerRegistry | None = None) -> HandlerRegistry:
    """Register every built-in handler; ``feeds`` maps source_type to an ``UpstreamFeed``."""
    from ragsync.services.handlers.commerce import OrderHandler, QboCustomerHandler, ShopifyCustomerHandler
    from ragsync.services.handlers.tickets import InteractionHandler, TicketCommentHandler, TicketHandler
    from ragsync.services.handlers.upstream import (
        EmailHandler,
        QboEstimateHandler,
        QboInvoiceHandler,
        ShipstationShipmentHandler,
    )

    feeds = feeds or {}
    target = target if target is not None else registry
    target.register(TicketHandler())
    target.register(TicketCommentHandler())
    target.register(InteractionHandler())
    target.register(OrderHandler())
    target.register(ShopifyCustomerHandler())
    target.register(QboCustomerHandler())
    target.register(QboInvoiceHandler(feeds.get("qbo_invoice")))
    target.register(QboEstimateHandler(feeds.get("qbo_estimate")))
    target.register(ShipstationShipmentHandler(feeds.get("shipstation_shipment")))
    if feeds.get("email") is not None:
        target.register(EmailHandler(feeds["email"]))
    return target
