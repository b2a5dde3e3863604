"""
Per-site Metrc credentials.

The sync engine treats credentials as opaque: the calling layer resolves
them (from settings, a vault, the site record) and passes them in. Storage
and encryption of keys live outside this package.
"""
from dataclasses import dataclass
from typing import Optional

PRODUCTION_URL_TEMPLATE = "https://api-{state}.metrc.com"
SANDBOX_URL_TEMPLATE = "https://sandbox-api-{state}.metrc.com"


class MissingCredentialsError(ValueError):
    """Raised when a site lacks a license number or API keys."""


@dataclass(frozen=True)
class SiteCredentials:
    license_number: str
    user_api_key: str
    vendor_api_key: str
    state_code: str = "ca"
    is_sandbox: bool = False

    def validate(self) -> None:
        """
        Raises:
            MissingCredentialsError: naming every missing field.
        """
        missing = [
            field
            for field in ("license_number", "user_api_key", "vendor_api_key", "state_code")
            if not (getattr(self, field) or "").strip()
        ]
        if missing:
            raise MissingCredentialsError(
                "Missing Metrc credentials: " + ", ".join(missing)
            )

    def __repr__(self) -> str:
        # Keys never appear in logs
        return (
            f"SiteCredentials(license_number={self.license_number!r}, "
            f"state_code={self.state_code!r}, is_sandbox={self.is_sandbox})"
        )


def metrc_base_url(state_code: str, is_sandbox: bool = False) -> str:
    """Return the Metrc API root for a state, e.g. https://api-ca.metrc.com."""
    template = SANDBOX_URL_TEMPLATE if is_sandbox else PRODUCTION_URL_TEMPLATE
    return template.format(state=state_code.strip().lower())


def credentials_from_settings(license_number: Optional[str], settings) -> SiteCredentials:
    """Build credentials for a site from the single-tenant settings."""
    return SiteCredentials(
        license_number=license_number or "",
        user_api_key=settings.metrc_user_api_key,
        vendor_api_key=settings.metrc_vendor_api_key,
        state_code=settings.metrc_state_code,
        is_sandbox=settings.metrc_sandbox,
    )
