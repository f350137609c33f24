"""Provider registry keyed by provider identifier (e.g. "RAZORPAY")."""

_REGISTRY = {}


def register(provider):
    def decorator(cls):
        cls.provider = provider
        _REGISTRY[provider] = cls
        return cls

    return decorator


def get_gateway_class(provider):
    """Return the gateway class for ``provider`` or None if it is unknown."""
    return _REGISTRY.get((provider or "").upper())


def available_providers():
    return sorted(_REGISTRY)
