"""Tenant directory: resolves a tenant's own tax identifier (NIP)."""

import logging

from services.review.validators import normalize_nip
from services.shared.config import Settings

logger = logging.getLogger(__name__)


class TenantDirectory:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def get_tax_id(self, tenant_id: str) -> str | None:
        """Return the tenant's normalised NIP, or None when it is not configured.

        Falls back to ``ksef_nip`` for tenants without an explicit mapping.
        """
        raw = self.settings.tenant_tax_ids.get(tenant_id) or self.settings.ksef_nip
        if not raw:
            logger.warning(f"No tax id configured for tenant {tenant_id}")
            return None
        return normalize_nip(raw)
