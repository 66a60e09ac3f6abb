"""
Cache of decompositions (lists of partial integrals), keyed by (set of integration variables, range name).

Each slot is addressed by an integer code handed out to callers. A slot keeps its key for good,
while its content (the entry) may be evicted ("sterilized") at any time;
the key then allows the owner to rebuild the identical entry at the same code.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Optional

from integration_errors import ContractViolation


logger = logging.getLogger(__name__)


#######################################
# settings
#######################################
CACHE_SIZE = 10   # max number of live entries per cache, the oldest entry is sterilized beyond that
NO_INTEGRAL = 0   # sentinel code: no analytic integral available, codes handed out start at 1


@dataclass(frozen=True)
class CacheKey:
    variables: tuple              # in the order of the first request, for a reproducible rebuild
    range_name: Optional[str] = None

    @property
    def identity (self):
        return frozenset(self.variables), self.range_name


class OwnedArena:
    """
    terms synthesized for one cache entry, released together (and exactly once) with it
    """

    def __init__(self, terms=()):
        self._terms = list(terms)
        self.released = False

    def release (self):
        if self.released:
            raise ContractViolation("owned terms of a cache entry released twice")
        logger.debug("releasing %d owned terms %s", len(self._terms), [t.name for t in self._terms])
        self._terms.clear()
        self.released = True

    def __iter__(self):
        return iter(self._terms)

    def __len__(self):
        return len(self._terms)


@dataclass
class CacheEntry:
    result: list                  # partial integrals (or plain factors) to multiply
    arena: OwnedArena


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    stores: int = 0
    rebuilds: int = 0
    sterilizations: int = 0


@dataclass
class _Slot:
    key: CacheKey
    entry: Optional[CacheEntry] = None


class DecompositionCache:

    def __init__(self, capacity=None):
        self.capacity = CACHE_SIZE if capacity is None else capacity
        if self.capacity < 1:
            raise ValueError("cache capacity must be at least 1")
        self._slots = {}            # code -> _Slot
        self._codes = {}            # key identity -> code
        self._live = OrderedDict()  # codes with an entry, oldest first
        self._next_code = NO_INTEGRAL + 1
        self.stats = CacheStats()

    def lookup (self, variables, range_name=None):
        """
        code of the live entry for this key, or None (miss: nothing stored, or the slot was sterilized)
        """
        code = self._codes.get(CacheKey(tuple(variables), range_name).identity)
        if code is not None and self._slots[code].entry is not None:
            self.stats.hits += 1
            return code
        self.stats.misses += 1
        return None

    def find_code (self, variables, range_name=None):
        """code of the slot for this key (live or sterilized), or None; not counted as a lookup"""
        return self._codes.get(CacheKey(tuple(variables), range_name).identity)

    def store (self, variables, range_name, result, owned):
        """
        install an entry and return its code
        the same key always gets the same code: a live entry is replaced, a sterilized slot is revived
        """
        key = CacheKey(tuple(variables), range_name)
        code = self._codes.get(key.identity)
        if code is None:
            code = self._next_code
            self._next_code += 1
            self._codes[key.identity] = code
            self._slots[code] = _Slot(key)
        else:
            slot = self._slots[code]
            if slot.entry is not None:
                slot.entry.arena.release()
                slot.entry = None
                del self._live[code]

        while len(self._live) >= self.capacity:
            oldest = next(iter(self._live))
            self.sterilize(oldest)

        self._slots[code].entry = CacheEntry(list(result), OwnedArena(owned))
        self._live[code] = None
        self.stats.stores += 1
        logger.debug("stored %s with code %d for %s range %s",
                     [t.name for t in result], code, [v.name for v in key.variables], range_name or "<none>")
        return code

    def fetch_by_code (self, code):
        """
        entry for code, or None if the slot was sterilized
        a code never handed out by this cache is a ContractViolation
        """
        return self._slot(code).entry

    def key_by_code (self, code):
        return self._slot(code).key

    def is_live (self, code):
        return self._slot(code).entry is not None

    def sterilize (self, code):
        """evict the entry of a slot, keeping its key"""
        slot = self._slot(code)
        if slot.entry is None:
            return
        slot.entry.arena.release()
        slot.entry = None
        del self._live[code]
        self.stats.sterilizations += 1
        logger.debug("sterilized slot %d", code)

    def sterilize_all (self):
        for code in list(self._live):
            self.sterilize(code)

    def clear (self):
        """release all entries and forget all keys (owner destroyed), codes issued so far become invalid"""
        for code in list(self._live):
            self._slots[code].entry.arena.release()
        self._slots.clear()
        self._codes.clear()
        self._live.clear()

    def _slot (self, code):
        slot = self._slots.get(code)
        if slot is None:
            raise ContractViolation(f"integral code {code} was never issued by this cache")
        return slot

    def __len__(self):
        return len(self._live)
