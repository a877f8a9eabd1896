"""
Chain Service — create, edit, delete, restore and regroup chains.

Shares the AppState and TreeCache with SessionService so both always see
the same chain list. Deletion is soft (recycle bin) and always covers the
chain together with everything below it.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from src.chains.cache import TreeCache
from src.chains.tree import find_node, iter_nodes
from src.data.models import AppState, Chain, ChainTreeNode
from src.data.storage import Storage

logger = logging.getLogger(__name__)

IMPORT_MODES = ("move", "copy")


class ChainService:
    def __init__(
        self,
        storage: Storage,
        state: AppState,
        cache: TreeCache,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.storage = storage
        self.state = state
        self.cache = cache
        self._now = clock

    def get_tree(self) -> List[ChainTreeNode]:
        return self.cache.get_tree(self.state.chains)

    def descendants_of(self, chain_id: str) -> List[str]:
        """Ids below chain_id in the current tree (not including itself)."""
        node = find_node(self.get_tree(), chain_id)
        if node is None:
            return []
        return [n.id for n in iter_nodes(node.children)]

    # ── Create / update ─────────────────────────────────────────────────────

    def save_chain(self, chain: Chain) -> Chain:
        """
        Create or update a chain.

        A chain without an id is new: it gets a fresh id, zeroed counters and
        a created_at stamp. Otherwise the record with the same id is replaced.
        """
        if not chain.id:
            chain = replace(
                chain,
                id=uuid.uuid4().hex,
                current_streak=0,
                auxiliary_streak=0,
                total_completions=0,
                total_failures=0,
                auxiliary_failures=0,
                created_at=self._now(),
                last_completed_at=None,
                deleted_at=None,
            )
            logger.info("Creating chain %s (%s)", chain.id, chain.name)

        self._write_chains([chain])
        if self.state.find_chain(chain.id) is None:
            self.state.chains = self.state.chains + [chain]
        else:
            self.state.chains = [chain if c.id == chain.id else c for c in self.state.chains]
        return chain

    def update_task_repeat_count(self, chain_id: str, count: int) -> Optional[Chain]:
        if count < 0:
            raise ValueError(f"task_repeat_count must not be negative, got {count}")
        chain = self.state.find_chain(chain_id)
        if chain is None:
            logger.warning("update_task_repeat_count: unknown chain %s", chain_id)
            return None
        return self.save_chain(replace(chain, task_repeat_count=count))

    def import_units(self, unit_ids: Iterable[str], group_id: str,
                     mode: str = "move") -> List[Chain]:
        """Bring existing units into a group, either moving them or copying them."""
        if mode not in IMPORT_MODES:
            raise ValueError(f"import mode must be one of {IMPORT_MODES}, got {mode!r}")
        group = self.state.find_chain(group_id)
        if group is None or not group.is_group:
            logger.warning("import_units: %s is not a group", group_id)
            return []

        next_order = 1 + max(
            (c.sort_order for c in self.state.chains if c.parent_id == group_id), default=-1
        )
        imported: List[Chain] = []
        for unit_id in unit_ids:
            unit = self.state.find_chain(unit_id)
            if unit is None or unit.is_group or unit.id == group_id:
                logger.info("import_units: skipping %s", unit_id)
                continue
            if mode == "move":
                imported.append(replace(unit, parent_id=group_id, sort_order=next_order))
            else:
                imported.append(replace(
                    unit,
                    id=uuid.uuid4().hex,
                    name=f"{unit.name} (copy)",
                    parent_id=group_id,
                    sort_order=next_order,
                    current_streak=0,
                    auxiliary_streak=0,
                    total_completions=0,
                    total_failures=0,
                    auxiliary_failures=0,
                    created_at=self._now(),
                    last_completed_at=None,
                ))
            next_order += 1

        if not imported:
            return []
        self._write_chains(imported)
        by_id = {c.id: c for c in imported}
        kept = [by_id.pop(c.id, c) for c in self.state.chains]
        self.state.chains = kept + list(by_id.values())
        logger.info("Imported %d unit(s) into %s (%s)", len(imported), group_id, mode)
        return imported

    # ── Recycle bin ─────────────────────────────────────────────────────────

    def delete_chain(self, chain_id: str) -> List[str]:
        """Soft-delete a chain and its descendants; returns the affected ids."""
        try:
            ids = self.storage.soft_delete_chain(chain_id)
        finally:
            self.cache.on_data_change("chains")
        if not ids:
            return []

        gone = set(ids)
        self.state.chains = [c for c in self.state.chains if c.id not in gone]

        scheduled = [s for s in self.state.scheduled_sessions if s.chain_id not in gone]
        if len(scheduled) != len(self.state.scheduled_sessions):
            self.storage.save_scheduled_sessions(scheduled)
            self.state.scheduled_sessions = scheduled
        self.state.pending_judgments = [
            j for j in self.state.pending_judgments if j not in gone
        ]
        active = self.state.active_session
        if active is not None and active.chain_id in gone:
            self.storage.save_active_session(None)
            self.state.active_session = None
            logger.info("Active session on %s ended by deletion", active.chain_id)
        self.cache.on_data_change("sessions")
        return ids

    def list_deleted_chains(self) -> List[Chain]:
        return self.storage.get_deleted_chains()

    def restore_chains(self, chain_ids: Iterable[str]) -> List[str]:
        restored: List[str] = []
        try:
            for chain_id in chain_ids:
                restored.extend(self.storage.restore_chain(chain_id))
        finally:
            self.cache.on_data_change("chains")
        if restored:
            self.state.chains = self.storage.get_active_chains()
        return restored

    def permanently_delete_chains(self, chain_ids: Iterable[str]) -> List[str]:
        removed: List[str] = []
        try:
            for chain_id in chain_ids:
                removed.extend(self.storage.permanently_delete_chain(chain_id))
        finally:
            self.cache.on_data_change("chains")
        gone = set(removed)
        self.state.chains = [c for c in self.state.chains if c.id not in gone]
        return removed

    # ── Internal ────────────────────────────────────────────────────────────

    def _write_chains(self, chains: List[Chain]) -> None:
        try:
            self.storage.save_chains(chains)
        finally:
            self.cache.on_data_change("chains")
