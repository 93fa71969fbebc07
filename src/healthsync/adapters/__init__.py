"""Platform adapters for HealthSync.

Each adapter implements the HealthPlatform ABC and handles:
- Transport and authentication against the platform API
- Mapping platform JSON into canonical RawRecord / PlatformAggregate models
- Pagination
- Translating raw failures into typed errors (see ``classification``)

Available adapters:
    HttpHealthPlatform — JSON REST API (httpx)
"""

from src.healthsync.adapters.http_platform import HttpHealthPlatform

__all__ = [
    "HttpHealthPlatform",
]

# Registry: platform id → adapter class
ADAPTER_REGISTRY: dict[str, type] = {
    "http": HttpHealthPlatform,
}


def get_adapter(platform_id: str) -> "type":
    """Return the adapter class for a given platform id.

    Raises:
        KeyError: If no adapter is registered for platform_id.
    """
    if platform_id not in ADAPTER_REGISTRY:
        raise KeyError(
            f"No adapter registered for platform '{platform_id}'. "
            f"Available: {sorted(ADAPTER_REGISTRY)}"
        )
    return ADAPTER_REGISTRY[platform_id]
