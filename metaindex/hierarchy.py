"""
Hierarchy Builder
=================
Assembles entities into a forest through their ``parent`` references.

``build`` is pure: it never mutates the entities it is given and returns a
fresh ``Hierarchy`` every call. Broken structure is isolated rather than
fatal:

  * an unresolved parent makes the entity an orphan root
  * a parent chain that loops is cut at the first revisited node, which
    becomes a root, and a warning is recorded
  * nodes deeper than ``max_depth`` are kept, with a warning
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Dict, Iterable, List, Mapping, Optional, Union

from .errors import CycleDetected
from .models import Entity, Hierarchy, HierarchyNode, HierarchyStats

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 10


def _sibling_key(node: HierarchyNode):
    return (node.entity.importance_rank, node.entity.id)


class HierarchyBuilder:
    """Builds ``Hierarchy`` values from entity sets."""

    def __init__(self, max_depth: int = DEFAULT_MAX_DEPTH):
        self.max_depth = max_depth

    def build(self, entities: Union[Mapping[str, Entity], Iterable[Entity]]) -> Hierarchy:
        """
        Args:
            entities: ``{id: Entity}`` or any iterable of entities

        Returns:
            Hierarchy with sorted roots, stats, warnings and relationship chains
        """
        if isinstance(entities, Mapping):
            entity_list = list(entities.values())
        else:
            entity_list = list(entities)

        nodes: Dict[str, HierarchyNode] = {}
        for entity in entity_list:
            if entity.id in nodes:
                logger.warning(f"[HIERARCHY] Duplicate id '{entity.id}', keeping the first")
                continue
            nodes[entity.id] = HierarchyNode(entity=entity)

        warnings: List[str] = []
        parent_of: Dict[str, Optional[str]] = {}
        orphans = 0

        for entity_id in sorted(nodes):
            node = nodes[entity_id]
            parent = node.entity.parent
            if parent and parent not in nodes:
                node.is_orphan = True
                orphans += 1
                warnings.append(f"'{entity_id}' references missing parent '{parent}', promoted to root")
                parent_of[entity_id] = None
            else:
                parent_of[entity_id] = parent or None

        cycles = self._break_cycles(sorted(nodes), parent_of, warnings)

        roots: List[HierarchyNode] = []
        for entity_id in sorted(nodes):
            parent = parent_of[entity_id]
            if parent is None:
                roots.append(nodes[entity_id])
            else:
                nodes[parent].children.append(nodes[entity_id])

        roots.sort(key=_sibling_key)
        for index, root in enumerate(roots):
            root.is_root = True
            root.sibling_index = index

        chains: Dict[str, List[str]] = {}
        max_depth = 0
        # Top-down: depth, chains, sibling order
        stack = [(root, [root.id]) for root in reversed(roots)]
        while stack:
            node, chain = stack.pop()
            node.relationship_chain = chain
            chains[node.id] = chain
            node.depth = len(chain) - 1
            max_depth = max(max_depth, node.depth)
            if node.depth > self.max_depth:
                warnings.append(
                    f"'{node.id}' sits at depth {node.depth}, beyond the limit of {self.max_depth}"
                )
            node.children.sort(key=_sibling_key)
            for index, child in enumerate(node.children):
                child.sibling_index = index
            for child in reversed(node.children):
                stack.append((child, chain + [child.id]))

        # Bottom-up: descendant counts
        order: List[HierarchyNode] = []
        stack = list(roots)
        while stack:
            node = stack.pop()
            order.append(node)
            stack.extend(node.children)
        for node in reversed(order):
            node.total_descendants = sum(1 + c.total_descendants for c in node.children)

        stats = HierarchyStats(
            total=len(nodes),
            roots=len(roots),
            orphans=orphans,
            cycles=cycles,
            max_depth=max_depth,
            total_descendants=sum(r.total_descendants for r in roots),
            by_type=dict(Counter(n.entity.type for n in nodes.values())),
        )

        for warning in warnings:
            logger.warning(f"[HIERARCHY] {warning}")
        logger.info(
            f"[HIERARCHY] Built {stats.total} node(s): {stats.roots} root(s), "
            f"{stats.orphans} orphan(s), {stats.cycles} cycle(s), max depth {stats.max_depth}"
        )
        return Hierarchy(roots=roots, stats=stats, warnings=warnings, relationship_chains=chains)

    @staticmethod
    def _break_cycles(
        ids: List[str],
        parent_of: Dict[str, Optional[str]],
        warnings: List[str],
    ) -> int:
        """Cut every parent loop in place. Returns the number of cuts."""
        settled = set()
        cuts = 0
        for entity_id in ids:
            path = [entity_id]
            seen = {entity_id}
            current = parent_of[entity_id]
            while current is not None and current not in settled:
                if current in seen:
                    error = CycleDetected(current, path + [current])
                    warnings.append(f"{error}; '{current}' detached and promoted to root")
                    parent_of[current] = None
                    cuts += 1
                    break
                seen.add(current)
                path.append(current)
                current = parent_of[current]
            settled.update(path)
        return cuts


def build_hierarchy(entities, max_depth: int = DEFAULT_MAX_DEPTH) -> Hierarchy:
    """Shortcut for ``HierarchyBuilder(max_depth).build(entities)``."""
    return HierarchyBuilder(max_depth=max_depth).build(entities)
