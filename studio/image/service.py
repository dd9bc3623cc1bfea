"""Image service dispatcher used by the CLI and HTTP adapters.

Role in pipeline:
    - Resolves the credential (explicit argument, else the local store).
    - Runs one full generation on the given (or a fresh) session.
    - Returns the terminal `GenerationResult` unchanged to the adapter.

Credential resolution:
    An explicitly passed credential wins. Otherwise the stored one is used; when
    the store has been cleared, `None` is forwarded and the session rejects the
    submission with `ValidationError` before any network call.

Error handling strategy:
    Exceptions from the session are intentionally propagated.
"""

from typing import Optional

from studio.image.models import GenerationRequest, GenerationResult
from studio.image.session import GenerationSession
from studio.storage.credential_store import CredentialStore


def resolve_credential(credential: Optional[str], store: Optional[CredentialStore]) -> Optional[str]:
    if credential and credential.strip():
        return credential.strip()
    if store is None:
        return None
    return store.load()


async def generate_image(
    request: GenerationRequest,
    credential: Optional[str] = None,
    session: Optional[GenerationSession] = None,
    store: Optional[CredentialStore] = None,
) -> GenerationResult:
    """Generate images for `request` via the Replicate predictions API.

    Args:
        request: Generation parameters.
        credential: API key; falls back to `store` when omitted.
        session: Session owning the active prediction. A new one is created
            when omitted.
        store: Credential store used for fallback resolution.

    Returns:
        Successful `GenerationResult` (image URLs in output order).
    """
    session = session or GenerationSession()
    return await session.generate(request, resolve_credential(credential, store))
