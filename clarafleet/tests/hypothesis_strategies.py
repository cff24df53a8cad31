"""Hypothesis strategies for service dependency graphs.

Usage:
    from clarafleet.tests.hypothesis_strategies import acyclic_service_graphs
    from hypothesis import given

    @given(services=acyclic_service_graphs())
    def test_valid_graph(services):
        assert ServiceRegistry(services).validate(services) == []
"""

from __future__ import annotations

from hypothesis import strategies as st

from clarafleet.api.schemas.services import ServiceType
from clarafleet.services.service_definitions import ServiceDefinition

MAX_SERVICES = 12


def _definition(index: int, dependencies: set[int]) -> ServiceDefinition:
    return ServiceDefinition(
        name=f"svc{index}",
        display_name=f"Service {index}",
        type=ServiceType.SERVICE,
        critical=True,
        priority=index,
        dependencies=tuple(f"svc{d}" for d in sorted(dependencies)),
    )


@st.composite
def _acyclic_edges(draw: st.DrawFn, min_size: int = 1) -> list[set[int]]:
    """Edge sets where service i only depends on services with a lower index."""
    size = draw(st.integers(min_value=min_size, max_value=MAX_SERVICES))
    return [
        draw(st.sets(st.integers(min_value=0, max_value=i - 1), max_size=3)) if i else set()
        for i in range(size)
    ]


@st.composite
def acyclic_service_graphs(draw: st.DrawFn) -> dict[str, ServiceDefinition]:
    edges = draw(_acyclic_edges())
    return {f"svc{i}": _definition(i, deps) for i, deps in enumerate(edges)}


@st.composite
def cyclic_service_graphs(draw: st.DrawFn) -> dict[str, ServiceDefinition]:
    """An acyclic graph plus one ring of dependencies (a self-loop for length 1)."""
    edges = draw(_acyclic_edges())
    ring = draw(
        st.lists(
            st.integers(min_value=0, max_value=len(edges) - 1),
            min_size=1,
            max_size=len(edges),
            unique=True,
        )
    )
    for position, node in enumerate(ring):
        edges[node].add(ring[(position + 1) % len(ring)])
    return {f"svc{i}": _definition(i, deps) for i, deps in enumerate(edges)}
