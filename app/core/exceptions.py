"""
Wallet authentication error taxonomy.

Login failures fall in two groups:
- the challenge is unusable (NoChallenge, ExpiredChallenge, ReplayedChallenge):
  the wallet should request a fresh challenge and sign again
- the request did not come from the claimed wallet (InvalidSignature,
  AddressMismatch): security relevant, logged separately

Endpoints map every login failure to the same generic 401 so clients cannot
probe which wallets have outstanding challenges.
"""

import re


class WalletAuthError(Exception):
    """Base class for authentication and session failures."""

    retry_with_new_challenge = False

    def __init__(self, message: str = "", wallet_address: str | None = None):
        super().__init__(message or self.__class__.__name__)
        self.wallet_address = wallet_address

    @property
    def kind(self) -> str:
        return re.sub(r"(?<!^)(?=[A-Z])", "_", self.__class__.__name__).lower()


class NoChallenge(WalletAuthError):
    retry_with_new_challenge = True


class ExpiredChallenge(WalletAuthError):
    retry_with_new_challenge = True


class ReplayedChallenge(WalletAuthError):
    retry_with_new_challenge = True


class InvalidSignature(WalletAuthError):
    pass


class AddressMismatch(WalletAuthError):
    pass


class InvalidWalletAddress(WalletAuthError):
    pass


class SessionNotFound(WalletAuthError):
    pass


class SessionExpired(WalletAuthError):
    pass


class SessionRevoked(WalletAuthError):
    pass


class StorageUnavailable(WalletAuthError):
    pass


# ChallengeStore.consume outcomes, translated by the auth service
class ChallengeNotFound(WalletAuthError):
    retry_with_new_challenge = True


class ChallengeExpired(WalletAuthError):
    retry_with_new_challenge = True


class ChallengeAlreadyConsumed(WalletAuthError):
    retry_with_new_challenge = True


class MalformedSignature(ValueError):
    """Signature or key could not be decoded, or recovery produced no usable address."""


class InvalidActivityType(ValueError):
    """activity_type is not part of the ActivityType taxonomy."""
