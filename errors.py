class ProviderError(Exception):
    """A chain data provider or price API call failed."""


class RateLimitError(ProviderError):
    """The upstream API answered with HTTP 429."""
