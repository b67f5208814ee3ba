"""
Canonical bank identities.

A static registry of Nigerian banks with lowercase aliases, plus an extended
registry pulled from the aggregation provider and held in a TTL cache that
the owner can reset. The cache timer is injectable so tests control time.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from cachetools import TTLCache
from thefuzz import process

from transfer_orchestrator.errors import ProviderUnavailable
from transfer_orchestrator.schemas import BankIdentity, BankList

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class BankEntry:
    name: str
    code: str
    aliases: Tuple[str, ...] = ()

    def identity(self) -> BankIdentity:
        return BankIdentity(code=self.code, name=self.name)

NIGERIAN_BANKS: Tuple[BankEntry, ...] = (
    BankEntry("Access Bank", "044", ("access",)),
    BankEntry("Citibank Nigeria", "023", ("citi", "citibank")),
    BankEntry("Ecobank Nigeria", "050", ("eco", "ecobank")),
    BankEntry("Fidelity Bank", "070", ("fidelity",)),
    BankEntry("First Bank of Nigeria", "011", ("first bank", "firstbank", "fbn")),
    BankEntry("First City Monument Bank", "214", ("fcmb",)),
    BankEntry("Globus Bank", "103", ("globus",)),
    BankEntry("Guaranty Trust Bank", "058", ("gtbank", "gtb", "gt bank")),
    BankEntry("Heritage Bank", "030", ("heritage",)),
    BankEntry("Jaiz Bank", "301", ("jaiz",)),
    BankEntry("Keystone Bank", "082", ("keystone",)),
    BankEntry("Kuda Bank", "090267", ("kuda",)),
    BankEntry("Opay", "100004", ("opay", "paycom")),
    BankEntry("Palmpay", "999991", ("palmpay", "palm pay")),
    BankEntry("Polaris Bank", "076", ("polaris",)),
    BankEntry("Providus Bank", "101", ("providus",)),
    BankEntry("Stanbic IBTC Bank", "221", ("stanbic", "ibtc")),
    BankEntry("Standard Chartered Bank", "068", ("standard chartered", "stanchart")),
    BankEntry("Sterling Bank", "232", ("sterling",)),
    BankEntry("SunTrust Bank", "100", ("suntrust",)),
    BankEntry("Titan Trust Bank", "102", ("titan",)),
    BankEntry("Union Bank", "032", ("union",)),
    BankEntry("United Bank for Africa", "033", ("uba",)),
    BankEntry("Unity Bank", "215", ("unity",)),
    BankEntry("Wema Bank", "035", ("wema", "alat")),
    BankEntry("Zenith Bank", "057", ("zenith",)),
    BankEntry("Moniepoint", "999993", ("moniepoint", "monie point")),
)

EXTENDED_REGISTRY_KEY = "banks"
SUGGESTION_SCORE_CUTOFF = 60

class BankRegistry:
    """Resolves bank names, aliases and codes to a BankIdentity."""

    def __init__(self, entries: Tuple[BankEntry, ...] = NIGERIAN_BANKS, bank_source=None,
                 ttl_seconds: int = 86400, timer: Callable[[], float] = time.monotonic):
        self.entries = entries
        self.bank_source = bank_source
        self._extended: TTLCache = TTLCache(maxsize=1, ttl=ttl_seconds, timer=timer)

    # --- Extended registry ---

    def reset(self):
        """Drops the cached extended registry; the next refresh refetches it."""
        self._extended.clear()
        logger.info("Extended bank registry cache cleared")

    def extended_banks(self) -> Dict[str, BankIdentity]:
        return self._extended.get(EXTENDED_REGISTRY_KEY, {})

    async def refresh(self) -> bool:
        """Fetches the provider's bank list when the cache is empty or stale."""
        if EXTENDED_REGISTRY_KEY in self._extended:
            return True
        if self.bank_source is None:
            return False
        try:
            result = await self.bank_source.list_banks()
        except ProviderUnavailable as e:
            logger.warning(f"Could not refresh extended bank registry: {e}")
            return False
        if not isinstance(result, BankList):
            logger.warning(f"Extended bank registry fetch failed: {result.reason} {result.message}")
            return False
        self._extended[EXTENDED_REGISTRY_KEY] = {bank.code: bank for bank in result.banks}
        logger.info(f"Extended bank registry loaded with {len(result.banks)} banks")
        return True

    async def nip_code_for(self, bank_code: str) -> str:
        """NIP code for a bank code, left-padded to six digits when the provider does not list one."""
        await self.refresh()
        bank = self.extended_banks().get(bank_code)
        if bank and bank.nip_code:
            return bank.nip_code
        return str(bank_code).zfill(6)

    # --- Lookups ---

    def find_by_code(self, code: str) -> Optional[BankIdentity]:
        for entry in self.entries:
            if entry.code == code:
                return entry.identity()
        return self.extended_banks().get(code)

    def find_by_name(self, bank_name: str) -> Optional[BankIdentity]:
        """Exact name, then alias, then partial name match."""
        normalized = bank_name.lower().strip()
        if not normalized:
            return None

        for entry in self.entries:
            if entry.name.lower() == normalized:
                return entry.identity()

        for entry in self.entries:
            if any(alias == normalized or alias in normalized for alias in entry.aliases):
                return entry.identity()

        for entry in self.entries:
            name = entry.name.lower()
            if normalized in name or name.split(" ")[0] in normalized:
                return entry.identity()

        for bank in self.extended_banks().values():
            if bank.name and bank.name.lower() == normalized:
                return bank

        return None

    def resolve(self, bank_name_or_code: str) -> Optional[BankIdentity]:
        """Numeric input is a code and always resolves (unregistered codes pass through without a name)."""
        value = (bank_name_or_code or "").strip()
        if not value:
            return None
        if value.isdigit():
            return self.find_by_code(value) or BankIdentity(code=value)
        return self.find_by_name(value)

    def suggestions(self, query: str, limit: int = 3) -> List[str]:
        """Closest registered bank names for an unmatched query. Never used to auto-select."""
        if not query or len(query.strip()) < 2:
            return []
        choices = [entry.name for entry in self.entries]
        matches = process.extract(query, choices, limit=limit)
        return [name for name, score in matches if score >= SUGGESTION_SCORE_CUTOFF]

    def bank_list(self) -> List[BankIdentity]:
        return [entry.identity() for entry in self.entries]
