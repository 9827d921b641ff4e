"""
Jurisdiction Domain Models

Calling-code based routing of subscribers to a jurisdiction and to the
backing store that governs it. Pure functions only; no I/O.
"""

import logging
import re
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel


logger = logging.getLogger(__name__)


class BackendKind(str, Enum):
    """Durable stores a jurisdiction can be governed by."""
    SUPABASE = "supabase"
    RELATIONAL = "relational"


class MeteredDimension(str, Enum):
    """Quota-limited actions."""
    CONSULTATIONS = "consultations"
    DOCUMENT_ANALYSES = "document_analyses"
    MESSAGES = "messages"


class JurisdictionConfig(BaseModel):
    """Static description of a supported jurisdiction."""
    code: str
    calling_code: str
    country: str
    language: str
    currency: str
    timezone: str
    backend: BackendKind
    metered_dimensions: List[MeteredDimension]


class ResolvedJurisdiction(BaseModel):
    """Result of resolving a phone number."""
    code: str
    calling_code: str
    country: str
    currency: str
    language: str
    timezone: str
    backend: BackendKind
    metered_dimensions: List[MeteredDimension]
    is_fallback: bool = False
    is_override: bool = False

    def meters(self, dimension: MeteredDimension) -> bool:
        return dimension in self.metered_dimensions


JURISDICTION_CONFIGS: Dict[str, JurisdictionConfig] = {
    "BR": JurisdictionConfig(
        code="BR",
        calling_code="55",
        country="Brasil",
        language="pt-BR",
        currency="BRL",
        timezone="America/Sao_Paulo",
        backend=BackendKind.SUPABASE,
        metered_dimensions=[MeteredDimension.MESSAGES],
    ),
    "PT": JurisdictionConfig(
        code="PT",
        calling_code="351",
        country="Portugal",
        language="pt-PT",
        currency="EUR",
        timezone="Europe/Lisbon",
        backend=BackendKind.RELATIONAL,
        metered_dimensions=list(MeteredDimension),
    ),
    "ES": JurisdictionConfig(
        code="ES",
        calling_code="34",
        country="Espanha",
        language="es-ES",
        currency="EUR",
        timezone="Europe/Madrid",
        backend=BackendKind.RELATIONAL,
        metered_dimensions=list(MeteredDimension),
    ),
}


def normalize_phone(phone: str) -> str:
    """Strip everything but digits (``+351 911-111 111`` -> ``351911111111``)."""
    return re.sub(r"\D", "", phone or "")


class JurisdictionResolver:
    """
    Maps phone numbers to jurisdictions.

    Resolution order:
    1. Explicit override list (operator/test forced numbers)
    2. Longest matching supported calling-code prefix
    3. Configured default jurisdiction (logged as a warning)
    """

    def __init__(
        self,
        default_jurisdiction: str = "BR",
        supported_jurisdictions: Optional[List[str]] = None,
        overrides: Optional[Dict[str, str]] = None,
        configs: Optional[Dict[str, JurisdictionConfig]] = None,
    ):
        self._configs = configs or JURISDICTION_CONFIGS
        supported = supported_jurisdictions or list(self._configs)
        self._supported = [code for code in supported if code in self._configs]
        self._default = default_jurisdiction
        self._overrides = {
            normalize_phone(phone): code
            for phone, code in (overrides or {}).items()
        }
        # Longest prefix first so "351" is tried before "34"/"35x" collisions
        self._prefixes = sorted(
            ((self._configs[code].calling_code, code) for code in self._supported),
            key=lambda item: len(item[0]),
            reverse=True,
        )

    @classmethod
    def from_settings(cls, settings) -> "JurisdictionResolver":
        return cls(
            default_jurisdiction=settings.default_jurisdiction,
            supported_jurisdictions=settings.supported_jurisdictions,
            overrides=settings.jurisdiction_overrides,
        )

    @property
    def default_code(self) -> str:
        return self._default

    def resolve(self, phone_number: str) -> ResolvedJurisdiction:
        """Resolve a phone number. Always returns a jurisdiction."""
        digits = normalize_phone(phone_number)

        forced = self._overrides.get(digits)
        if forced and forced in self._supported:
            logger.info(f"Jurisdiction override {forced} applied for {digits}")
            return self._build(self._configs[forced], is_override=True)

        for prefix, code in self._prefixes:
            if digits.startswith(prefix):
                return self._build(self._configs[code])

        logger.warning(
            f"Unrecognized calling code for {phone_number!r}, "
            f"falling back to {self._default}"
        )
        return self._build(self._configs[self._default], is_fallback=True)

    def for_code(self, code: str) -> ResolvedJurisdiction:
        """Resolve directly from a jurisdiction code (e.g. event metadata)."""
        config = self._configs.get((code or "").upper())
        if config is None or config.code not in self._supported:
            logger.warning(
                f"Unsupported jurisdiction {code!r}, falling back to {self._default}"
            )
            return self._build(self._configs[self._default], is_fallback=True)
        return self._build(config)

    def supported(self) -> List[JurisdictionConfig]:
        return [self._configs[code] for code in self._supported]

    def _build(
        self,
        config: JurisdictionConfig,
        is_fallback: bool = False,
        is_override: bool = False,
    ) -> ResolvedJurisdiction:
        return ResolvedJurisdiction(
            code=config.code,
            calling_code=config.calling_code,
            country=config.country,
            currency=config.currency,
            language=config.language,
            timezone=config.timezone,
            backend=config.backend,
            metered_dimensions=list(config.metered_dimensions),
            is_fallback=is_fallback,
            is_override=is_override,
        )


def format_phone(phone_number: str, code: str) -> str:
    """Format a phone number for display in its jurisdiction's convention."""
    digits = normalize_phone(phone_number)

    if code == "BR" and len(digits) == 13:
        return f"+{digits[:2]} ({digits[2:4]}) {digits[4:9]}-{digits[9:]}"
    if code == "PT" and len(digits) == 12:
        return f"+{digits[:3]} {digits[3:6]} {digits[6:9]} {digits[9:]}"
    if code == "ES" and len(digits) == 11:
        return f"+{digits[:2]} {digits[2:5]} {digits[5:7]} {digits[7:9]} {digits[9:]}"

    return phone_number
