"""
Tree Builder — turns flat chain records into a sorted hierarchy.

build_tree() never raises. Malformed input is repaired (self-parenting and
cyclic links cleared, orphans promoted to roots, id-less records dropped) and
every repair is recorded in a TreeBuildReport and logged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Set, Tuple

from src.data.models import Chain, ChainTreeNode

logger = logging.getLogger(__name__)


@dataclass
class TreeBuildReport:
    """Diagnostics collected while building one tree."""
    errors: List[str] = field(default_factory=list)
    duplicate_ids: List[str] = field(default_factory=list)
    self_references: List[str] = field(default_factory=list)
    cycles: List[str] = field(default_factory=list)
    orphans: List[str] = field(default_factory=list)
    missing_ids: List[str] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not (self.errors or self.duplicate_ids or self.self_references
                    or self.cycles or self.orphans or self.missing_ids)


def build_tree(chains: List[Chain]) -> List[ChainTreeNode]:
    """Build the chain forest. Returns the sorted root nodes."""
    roots, _ = build_tree_with_report(chains)
    return roots


def build_tree_with_report(chains: List[Chain]) -> Tuple[List[ChainTreeNode], TreeBuildReport]:
    report = TreeBuildReport()
    try:
        roots = _build(chains, report)
    except Exception:
        logger.exception("build_tree: unexpected failure, returning empty tree")
        report.errors.append("unexpected failure while building tree")
        return [], report

    if not report.is_clean:
        logger.warning(
            "build_tree repaired input: %d error(s), duplicates=%s, self-refs=%s, "
            "cycles=%s, orphans=%s, missing=%s",
            len(report.errors), report.duplicate_ids, report.self_references,
            report.cycles, report.orphans, report.missing_ids,
        )
    return roots, report


def _build(chains: List[Chain], report: TreeBuildReport) -> List[ChainTreeNode]:
    if not chains:
        return []

    # 1. validate: drop id-less records, last duplicate wins
    by_id: Dict[str, Chain] = {}
    for chain in chains:
        if chain is None or not getattr(chain, "id", None):
            report.errors.append(f"chain without id dropped: {chain!r}")
            continue
        if chain.id in by_id:
            report.duplicate_ids.append(chain.id)
        by_id[chain.id] = chain

    # 2 + 3. node map, with self-references cleared
    nodes: Dict[str, ChainTreeNode] = {}
    for chain_id, chain in by_id.items():
        node = ChainTreeNode.from_chain(chain)
        if node.parent_id == node.id:
            report.self_references.append(node.id)
            node.parent_id = None
        nodes[chain_id] = node

    # orphans become roots
    for node in nodes.values():
        if node.parent_id is not None and node.parent_id not in nodes:
            report.orphans.append(node.id)
            node.parent_id = None

    _break_cycles(nodes, report)

    # 4. attach
    roots: List[ChainTreeNode] = []
    for node in nodes.values():
        if node.parent_id is None:
            roots.append(node)
        else:
            nodes[node.parent_id].children.append(node)

    # 5. sort (stable, so equal sort_order keeps input order) and set depth
    roots.sort(key=lambda n: n.sort_order)
    for root in roots:
        _sort_and_set_depth(root, 0)

    # 6. every surviving id must be reachable
    seen = {node.id for node in iter_nodes(roots)}
    report.missing_ids.extend(i for i in nodes if i not in seen)
    if report.missing_ids:
        logger.error("build_tree: chains lost from tree: %s", report.missing_ids)
    return roots


def _break_cycles(nodes: Dict[str, ChainTreeNode], report: TreeBuildReport) -> None:
    """Demote the node that closes any parent cycle (A -> B -> A) to a root."""
    settled: Set[str] = set()
    for start in nodes:
        path: List[str] = []
        on_path: Set[str] = set()
        current: Optional[str] = start
        while current is not None and current not in settled:
            if current in on_path:
                # the last node on the path points back into it
                closer = nodes[path[-1]]
                report.cycles.append(closer.id)
                closer.parent_id = None
                break
            on_path.add(current)
            path.append(current)
            current = nodes[current].parent_id
        settled.update(path)


def _sort_and_set_depth(node: ChainTreeNode, depth: int) -> None:
    node.depth = depth
    node.children.sort(key=lambda n: n.sort_order)
    for child in node.children:
        _sort_and_set_depth(child, depth + 1)


# ── Queries over a built tree ──────────────────────────────────────────────

def iter_nodes(roots: List[ChainTreeNode]) -> Iterator[ChainTreeNode]:
    """Depth-first, pre-order walk. Each node is yielded at most once."""
    seen: Set[int] = set()
    stack = list(reversed(roots))
    while stack:
        node = stack.pop()
        if id(node) in seen:
            continue
        seen.add(id(node))
        yield node
        stack.extend(reversed(node.children))


def find_node(roots: List[ChainTreeNode], chain_id: str) -> Optional[ChainTreeNode]:
    for node in iter_nodes(roots):
        if node.id == chain_id:
            return node
    return None


def collect_unit_ids(node: ChainTreeNode) -> List[str]:
    """Ids of every non-group descendant of `node`, nested groups included."""
    return [n.id for n in iter_nodes(node.children) if not n.is_group]


def structural_signature(roots: List[ChainTreeNode]) -> List[Tuple[str, Optional[str], int]]:
    """(id, parent id, position among siblings) for every node, in walk order."""
    signature: List[Tuple[str, Optional[str], int]] = []
    for index, root in enumerate(roots):
        signature.append((root.id, None, index))
    for node in iter_nodes(roots):
        for index, child in enumerate(node.children):
            signature.append((child.id, node.id, index))
    return signature


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Rebuilds the parent/child hierarchy from flat chain records every time
#   the structure is needed.
#
# Repair policy (why nothing here raises):
#   - No id: dropped and reported.
#   - Duplicate id: reported, the last record wins.
#   - parent_id == id: cleared, the chain becomes a root.
#   - Parent not among the records (deleted parent): chain becomes a root.
#   - Longer cycles: the node that closes the loop is demoted to a root.
#
# Data flow:
#   Repository.get_active_chains() -> build_tree() -> progress queries
#   (next unit, X/Y completed) -> session service decides what to start.
#
# Interviewer-friendly talking points:
#   1. Depth is assigned after attachment by walking from the roots, so a
#      child listed before its parent still gets the right depth.
#   2. iter_nodes() is iterative with a seen-set: no recursion limit and no
#      infinite loop, even if a caller hands it a hand-built cyclic tree.
#   3. Sorting is stable, so siblings with the same sort_order keep the order
#      they were stored in.
