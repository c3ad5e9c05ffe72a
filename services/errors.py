"""
Error types shared by the context pipeline services
"""


class FinsightError(Exception):
    """Base class for pipeline errors"""


class ProviderError(FinsightError):
    """A market data provider call failed (timeout, HTTP error, bad payload, rate limit)"""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class EncryptionKeyError(FinsightError):
    """An encryption key was rejected at construction time"""


class ProfileDecryptionError(FinsightError):
    """Profile ciphertext could not be decrypted.

    The message is intentionally fixed so that no plaintext, key material or
    field value can end up in logs or API responses.
    """

    def __init__(self):
        super().__init__("Failed to decrypt profile data")


class TierCapabilityViolation(FinsightError):
    """A code path attempted something the caller's tier does not permit"""


class LLMServiceError(FinsightError):
    """The LLM provider failed or timed out"""
