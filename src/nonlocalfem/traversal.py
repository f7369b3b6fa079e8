"""Mesh traversal visitors.

Assembly never loops over the mesh itself: it hands a rule to one of the
visitors below.

- ``for_each_element``       rule(e), local element blocks
- ``for_each_element_pair``  rule(eL, eNL), nonlocal blocks over neighbour lists
- ``for_each_node``          rule(node, e, i), node-centric with global-to-local numbering

A rule receives the element (pair) and computes the whole block of its
(i, j) node pairs at once. Rules should only capture the arrays they write
to; the node-centric visitor gives each node exactly one owner, which is
what the row-parallel portrait builder relies on.
"""

from __future__ import annotations

from typing import Callable, Iterable, Optional

from .errors import ConfigurationError
from .mesh import Mesh


def for_each_element(
    mesh: Mesh,
    rule: Callable[[int], None],
    elements: Optional[Iterable[int]] = None,
) -> None:
    for e in range(mesh.elements_count) if elements is None else elements:
        rule(e)


def for_each_element_pair(
    mesh: Mesh,
    rule: Callable[[int, int], None],
    elements: Optional[Iterable[int]] = None,
) -> None:
    """Call rule(eL, eNL) for every element and each of its neighbours.

    An element with an empty neighbour list produces no calls.
    """
    if not mesh.has_neighbours:
        raise ConfigurationError("Nonlocal traversal needs mesh.find_neighbours() first")
    for eL in range(mesh.elements_count) if elements is None else elements:
        for eNL in mesh.neighbours_of(eL):
            rule(eL, int(eNL))


def for_each_node(
    mesh: Mesh,
    rule: Callable[[int, int, int], None],
    nodes: Optional[Iterable[int]] = None,
) -> None:
    """Call rule(node, e, i) for every element e touching node, i = local index of node in e."""
    ptr = mesh.node_elements_ptr
    for node in range(mesh.nodes_count) if nodes is None else nodes:
        for k in range(ptr[node], ptr[node + 1]):
            rule(node, int(mesh.node_elements[k]), int(mesh.node_local[k]))
