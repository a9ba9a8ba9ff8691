import pytest

from rstack.exceptions import CycleError, ValidationError
from rstack.MODELS.deployment_graph import DeploymentGraph
from rstack.MODELS.mount_spec import MountSpec
from rstack.MODELS.service_definition import ServiceDefinition, VolumeMount
from rstack.RUNNERS.dependency_resolver import DependencyResolver


def _svc(name, *depends_on, group="g", volumes=()):
    return ServiceDefinition(name=name, group=group, image=f"{name}:latest",
                             depends_on=list(depends_on), volumes=list(volumes))


def _graph(*services, mounts=()):
    graph = DeploymentGraph(mounts=list(mounts))
    graph.extend(services)
    return graph


def test_resolver_orders_dependencies_first():
    order = DependencyResolver().resolve_order({
        "riven": ["riven-db", "zilean", "plex"],
        "riven-db": [],
        "zilean": ["zilean-db"],
        "zilean-db": [],
        "plex": [],
    })
    assert order.index("riven-db") < order.index("riven")
    assert order.index("zilean-db") < order.index("zilean") < order.index("riven")
    assert order.index("plex") < order.index("riven")


def test_resolver_is_deterministic_by_declaration_order():
    deps = {"a": [], "b": [], "c": ["a"]}
    assert DependencyResolver().resolve_order(deps) == ["a", "b", "c"]
    assert DependencyResolver().resolve_order({"b": [], "a": [], "c": ["a"]}) == ["b", "a", "c"]


def test_resolver_reports_cycle():
    with pytest.raises(CycleError) as info:
        DependencyResolver().resolve_order({"a": ["b"], "b": ["c"], "c": ["a"]})
    assert info.value.cycle[0] == info.value.cycle[-1]
    assert set(info.value.cycle) == {"a", "b", "c"}


def test_cycle_is_a_validation_error():
    graph = _graph(_svc("a", "b"), _svc("b", "a"))
    with pytest.raises(ValidationError):
        graph.topological_order()


def test_unknown_dependency_is_rejected():
    with pytest.raises(ValidationError, match="undeclared"):
        _graph(_svc("riven", "riven-db"))


def test_duplicate_and_self_dependency_are_rejected():
    with pytest.raises(ValidationError):
        _graph(_svc("a"), _svc("a"))
    with pytest.raises(ValidationError):
        _graph(_svc("a", "a"))


def test_add_requires_dependencies_present():
    graph = _graph(_svc("db"))
    graph.add(_svc("app", "db"))
    assert graph.topological_order() == ["db", "app"]


def test_teardown_order_is_reversed():
    graph = _graph(_svc("db"), _svc("app", "db"), _svc("web", "app"))
    assert graph.teardown_order() == ["web", "app", "db"]


def test_dependents_of_is_transitive():
    graph = _graph(_svc("db"), _svc("app", "db"), _svc("web", "app"), _svc("other"))
    assert set(graph.dependents_of("db")) == {"app", "web"}
    assert graph.dependents_of("other") == []


def test_subgraph_keeps_dependencies_and_used_mounts(tmp_path):
    mount = MountSpec(name="riven", host_path=str(tmp_path / "mount"))
    plex = _svc("plex", volumes=[VolumeMount(host_path=str(tmp_path / "mount"), container_path="/mount")])
    graph = _graph(_svc("db"), _svc("app", "db"), plex, mounts=[mount])

    sub = graph.subgraph(["app"])
    assert set(sub.services) == {"app", "db"}
    assert sub.mounts == []

    sub = graph.subgraph(["plex"])
    assert sub.mounts == [mount]
    with pytest.raises(ValidationError):
        graph.subgraph(["nope"])


def test_mount_usage(tmp_path):
    root = str(tmp_path / "mount")
    mount = MountSpec(name="riven", host_path=root)
    user = _svc("riven", volumes=[VolumeMount(host_path=root + "/movies", container_path="/movies")])
    other = _svc("db", volumes=[VolumeMount(host_path=str(tmp_path / "mount2"), container_path="/data")])
    graph = _graph(user, other, mounts=[mount])

    assert graph.services_using(mount) == ["riven"]
    assert graph.mounts_for(other) == []


def test_groups_in_declaration_order():
    graph = _graph(_svc("plex", group="plex"), _svc("zdb", group="zilean"), _svc("z", "zdb", group="zilean"))
    assert graph.groups() == ["plex", "zilean"]
    assert [s.name for s in graph.services_in("zilean")] == ["zdb", "z"]


def test_mount_spec_rules():
    with pytest.raises(ValueError):
        MountSpec(name="x", host_path="relative/path")
    with pytest.raises(ValueError):
        MountSpec(name="x", host_path="/mnt/x", propagation_mode="private")
    spec = MountSpec(name="riven", host_path="/opt/media/riven/mount/")
    assert spec.host_path == "/opt/media/riven/mount"
    assert spec.unit_name == "riven-mount.service"
    assert spec.covers("/opt/media/riven/mount/movies")
    assert not spec.covers("/opt/media/riven/mount2")
