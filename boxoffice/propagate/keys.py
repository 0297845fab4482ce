# ---- cache keys (exact match only, never patterns)
def k_events_all() -> str: return "events:all"
def k_event(event_id: str) -> str: return f"events:detail:{event_id}"
def k_merch_all() -> str: return "merch:all"
def k_product(product_id: str) -> str: return f"merch:detail:{product_id}"
def k_guestlist(event_id: str) -> str: return f"guestlist:{event_id}"
def k_inventory(catalog_id: str) -> str: return f"inventory:{catalog_id}"
