"""
Execution-environment helpers shared by the contract models.

The contracts this package models run one call at a time and revert the
whole call when anything fails. ChainClock supplies block time, atomic_state
gives the revert, and non_reentrant blocks re-entry through external calls.
"""

import copy
import functools
import hashlib
import json
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum

from insurance_model.errors import ReentrancyError


@dataclass
class ChainClock:
    """Block timestamp and block number seen by every component."""
    timestamp: int = 0
    block_number: int = 0
    block_time: int = 12

    def advance(self, seconds=0, blocks=None):
        """
        Move the chain forward.

        Args:
            seconds: Seconds to add to the timestamp
            blocks: Blocks to mine; derived from seconds and block_time when omitted
        """
        if seconds < 0:
            raise ValueError("Cannot move the clock backwards")
        if blocks is None:
            blocks = max(1, seconds // self.block_time) if seconds else 0
        self.timestamp += seconds
        self.block_number += blocks

    def mine(self, blocks=1):
        """Mine blocks, advancing time by block_time per block."""
        self.advance(blocks * self.block_time, blocks)


def non_reentrant(method):
    """Reject a second entry into any guarded method of the same instance."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        if getattr(self, "_entered", False):
            raise ReentrancyError(f"Reentrant call to {method.__name__}")
        self._entered = True
        try:
            return method(self, *args, **kwargs)
        finally:
            self._entered = False

    return wrapper


@contextmanager
def atomic_state(*targets):
    """
    Snapshot the ledger attributes of each target and restore them on failure.

    Each target lists the attributes that make up its persistent state in a
    STATE_FIELDS tuple. Collaborator references are not part of the snapshot.
    """
    snapshots = []
    for target in targets:
        fields = getattr(target, "STATE_FIELDS", ())
        snapshots.append((target, {name: copy.deepcopy(getattr(target, name)) for name in fields}))
    try:
        yield
    except BaseException:
        for target, saved in snapshots:
            for name, value in saved.items():
                setattr(target, name, value)
        raise


def hash_fields(*values):
    """
    Hash values with a canonical JSON encoding.

    Used for commitment hashes, execution ids and loss-proof digests.
    """
    canonical = json.dumps([_canonical(value) for value in values], sort_keys=True, separators=(",", ":"))
    return "0x" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _canonical(value):
    if hasattr(value, "__dataclass_fields__"):
        return {name: _canonical(getattr(value, name)) for name in value.__dataclass_fields__}
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _canonical(v) for k, v in value.items()}
    if isinstance(value, Enum):
        return value.name
    return value
