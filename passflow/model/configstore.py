from __future__ import annotations
import json
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ConfigurationNotFound, InvalidConfiguration
from ..infra.sql import Gated
from .db import (
    DEFAULT_CONFIGURATION, EmailTemplate, PassConfigurationRow, Seller,
    SYSTEM_SELLER,
)
from .pricing import BUILTIN_DEFAULT, PassConfiguration, parse_configuration

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedConfiguration:
    configuration: PassConfiguration
    seller: Optional[Seller]

    @property
    def processor_origin(self) -> bool:
        return self.configuration.is_default


class ConfigurationStore:
    """Read-only view of sellers, pass configurations and email templates."""

    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def get_seller(self, seller_id: str) -> Optional[Seller]:
        async with self.gated():
            async with self.db.begin():
                seller = await self.db.get(Seller, seller_id)
        if seller is not None:
            # read-only snapshot, safe across later rollbacks
            self.db.expunge(seller)
        return seller

    async def get_configuration(
            self, config_id: str
    ) -> Optional[PassConfiguration]:
        async with self.gated():
            async with self.db.begin():
                row = await self.db.get(PassConfigurationRow, config_id)
        if row is None:
            return None
        try:
            doc = json.loads(row.document)
        except json.JSONDecodeError:
            raise InvalidConfiguration(
                f"configuration {config_id} is not valid JSON"
            )
        return parse_configuration(row.id, row.name, doc)

    async def resolve(
            self, seller_id: str, configuration_id: str
    ) -> ResolvedConfiguration:
        """Configuration that governs a pass for this seller.

        Processor orders (sentinel configuration or the system seller) use
        the stored ``default`` configuration when present, the built-in one
        otherwise, and carry no seller: they are attributed to the online
        shop even when the order names one. Seller orders use the seller's
        assigned configuration.
        """
        if (configuration_id == DEFAULT_CONFIGURATION
                or seller_id == SYSTEM_SELLER):
            stored = await self.get_configuration(DEFAULT_CONFIGURATION)
            return ResolvedConfiguration(stored or BUILTIN_DEFAULT, None)

        seller = await self.get_seller(seller_id)
        if seller is None or not seller.configuration_id:
            raise ConfigurationNotFound(seller_id)
        configuration = await self.get_configuration(seller.configuration_id)
        if configuration is None:
            raise ConfigurationNotFound(seller_id, seller.configuration_id)
        return ResolvedConfiguration(configuration, seller)

    # ----------------------------
    # templates
    # ----------------------------
    async def find_template(
            self, configuration_id: str
    ) -> Optional[EmailTemplate]:
        # newest configuration-specific template with usable content
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    select(EmailTemplate)
                    .where(EmailTemplate.configuration_id == configuration_id)
                    .order_by(EmailTemplate.created_at.desc())
                )).scalars().all()
        for row in rows:
            if row.html and row.html.strip():
                return row
        return None

    async def default_template(self) -> Optional[EmailTemplate]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    select(EmailTemplate)
                    .where(EmailTemplate.is_default.is_(True))
                    .order_by(EmailTemplate.created_at.desc())
                )).scalars().all()
        for row in rows:
            if row.html and row.html.strip():
                return row
        return None
