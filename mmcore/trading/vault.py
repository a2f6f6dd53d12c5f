from __future__ import annotations

import base64
import json
from typing import Awaitable, Callable

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from solders.keypair import Keypair

from .errors import CredentialDecryptionError
from .types import WalletRecord

KDF_ITERATIONS = 480_000

BlobSource = Callable[[str], Awaitable[str | None]]


def derive_fernet_key(passphrase: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode()))


def parse_secret_key(raw: bytes) -> Keypair:
    """Accepts 64 raw bytes, a JSON integer array or a base58 string."""
    if len(raw) == 64:
        return Keypair.from_bytes(raw)

    value = raw.decode("utf-8").strip()
    if value.startswith("["):
        arr = json.loads(value)
        if not isinstance(arr, list):
            raise ValueError("Secret key JSON must be an integer array.")
        return Keypair.from_bytes(bytes(arr))
    return Keypair.from_base58_string(value)


class FernetKeyVault:
    def __init__(self, *, master_key: str, blob_source: BlobSource, salt: str = "") -> None:
        if not master_key:
            raise ValueError("VAULT_KEY is required.")
        key = derive_fernet_key(master_key, salt.encode()) if salt else master_key.encode()
        self._fernet = Fernet(key)
        self._blob_source = blob_source

    def encrypt(self, keypair: Keypair) -> str:
        return self._fernet.encrypt(bytes(keypair)).decode("ascii")

    async def decrypt(self, wallet: WalletRecord) -> Keypair:
        blob = await self._blob_source(wallet.encrypted_key_ref)
        if not blob:
            raise CredentialDecryptionError(f"No encrypted key stored for wallet {wallet.wallet_id}.")

        try:
            raw = self._fernet.decrypt(blob.encode("ascii"))
        except (InvalidToken, UnicodeEncodeError) as error:
            raise CredentialDecryptionError(f"Encrypted key for wallet {wallet.wallet_id} is invalid.") from error

        try:
            keypair = parse_secret_key(raw)
        except (TypeError, ValueError) as error:
            raise CredentialDecryptionError(f"Decrypted key for wallet {wallet.wallet_id} is malformed.") from error
        finally:
            del raw
        return keypair
