from .client import Deadline, ProviderClient, ProviderResponse

__all__ = ["Deadline", "ProviderClient", "ProviderResponse"]
