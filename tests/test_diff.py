from __future__ import annotations

import random

from conftest import FakeRuntime, make_project
from pod_compose.diff import pending_changes, plan_down, plan_stop, plan_up
from pod_compose.inspector import StateInspector
from pod_compose.models import ActionKind, ReplicaSlot


def _observe(runtime, project):
    return StateInspector(runtime).snapshot(project.name)


def _summary(actions):
    return [(a.kind, str(a.slot)) for a in actions]


def _seed_all(runtime, project, status="running"):
    for svc in project.services.values():
        for i in range(svc.replicas):
            runtime.seed(project.name, svc, i, status=status)


def test_empty_runtime_creates_everything(runtime, app_project):
    actions = plan_up(app_project, _observe(runtime, app_project))
    assert _summary(actions) == [
        (ActionKind.CREATE, "api-0"),
        (ActionKind.CREATE, "api-1"),
        (ActionKind.CREATE, "web-0"),
    ]
    assert all(a.service is not None for a in actions)


def test_converged_state_is_all_noop(runtime, app_project):
    _seed_all(runtime, app_project)
    actions = plan_up(app_project, _observe(runtime, app_project))
    assert pending_changes(actions) == []
    assert len(actions) == 3


def test_image_change_recreates_only_that_service(runtime, app_project):
    _seed_all(runtime, app_project)
    changed = make_project(
        api={"image": "myapi:v2", "replicas": 2},
        web={"image": "nginx", "depends_on": ["api"]},
    )

    actions = plan_up(changed, _observe(runtime, changed))

    assert _summary(actions) == [
        (ActionKind.RECREATE, "api-0"),
        (ActionKind.RECREATE, "api-1"),
        (ActionKind.NOOP, "web-0"),
    ]
    assert actions[0].record is not None


def test_scale_down_removes_highest_index_first(runtime):
    three = make_project(api={"image": "myapi:v1", "replicas": 3})
    _seed_all(runtime, three)
    one = make_project(api={"image": "myapi:v1", "replicas": 1})

    actions = plan_up(one, _observe(runtime, one))

    assert _summary(actions) == [
        (ActionKind.NOOP, "api-0"),
        (ActionKind.REMOVE, "api-2"),
        (ActionKind.REMOVE, "api-1"),
    ]


def test_scale_up_fills_contiguous_indices(runtime):
    one = make_project(api={"image": "myapi:v1", "replicas": 1})
    _seed_all(runtime, one)
    three = make_project(api={"image": "myapi:v1", "replicas": 3})

    actions = plan_up(three, _observe(runtime, three))

    assert _summary(actions) == [
        (ActionKind.NOOP, "api-0"),
        (ActionKind.CREATE, "api-1"),
        (ActionKind.CREATE, "api-2"),
    ]


def test_scale_to_zero(runtime):
    two = make_project(api={"image": "myapi:v1", "replicas": 2})
    _seed_all(runtime, two)
    zero = make_project(api={"image": "myapi:v1", "replicas": 0})

    actions = plan_up(zero, _observe(runtime, zero))

    assert _summary(actions) == [(ActionKind.REMOVE, "api-1"), (ActionKind.REMOVE, "api-0")]


def test_stopped_container_with_same_config_is_started(runtime, app_project):
    api = app_project.services["api"]
    runtime.seed("app", api, 0, status="exited")
    runtime.seed("app", api, 1, status="created")
    runtime.seed("app", app_project.services["web"], 0, status="dead")

    actions = plan_up(app_project, _observe(runtime, app_project))

    assert _summary(actions) == [
        (ActionKind.START, "api-0"),
        (ActionKind.START, "api-1"),
        (ActionKind.RECREATE, "web-0"),
    ]


def test_gap_is_filled_not_tolerated(runtime):
    project = make_project(api={"image": "myapi:v1", "replicas": 3})
    api = project.services["api"]
    runtime.seed("app", api, 0)
    runtime.seed("app", api, 2)

    actions = plan_up(project, _observe(runtime, project))

    assert _summary(actions) == [
        (ActionKind.NOOP, "api-0"),
        (ActionKind.CREATE, "api-1"),
        (ActionKind.NOOP, "api-2"),
    ]


def test_plan_is_independent_of_listing_order(app_project):
    older = make_project(api={"image": "myapi:v0", "replicas": 4}, web={"image": "nginx", "depends_on": ["api"]})
    plans = []
    for seed in range(5):
        runtime = FakeRuntime()
        specs = [(older.services["api"], i) for i in range(4)] + [(older.services["web"], 0)]
        random.Random(seed).shuffle(specs)
        for svc, i in specs:
            runtime.seed("app", svc, i)
        plans.append(_summary(plan_up(app_project, _observe(runtime, app_project))))

    assert all(p == plans[0] for p in plans)
    assert plans[0] == [
        (ActionKind.RECREATE, "api-0"),
        (ActionKind.RECREATE, "api-1"),
        (ActionKind.REMOVE, "api-3"),
        (ActionKind.REMOVE, "api-2"),
        (ActionKind.NOOP, "web-0"),
    ]


def test_orphans_are_not_part_of_the_diff(runtime, app_project):
    runtime.seed("app", make_project(db={"image": "postgres"}).services["db"], 0)
    actions = plan_up(app_project, _observe(runtime, app_project))
    assert all(a.slot.service in ("api", "web") for a in actions)


def test_plan_stop_only_touches_running(runtime, app_project):
    api = app_project.services["api"]
    runtime.seed("app", api, 0)
    runtime.seed("app", api, 1, status="exited")
    runtime.seed("app", app_project.services["web"], 0)

    actions = plan_stop(app_project, _observe(runtime, app_project))

    assert _summary(actions) == [(ActionKind.STOP, "api-0"), (ActionKind.STOP, "web-0")]


def test_plan_down_removes_every_container_of_known_services(runtime, app_project):
    _seed_all(runtime, app_project, status="exited")
    runtime.seed("app", app_project.services["api"], 5)

    actions = plan_down(app_project, _observe(runtime, app_project))

    assert _summary(actions) == [
        (ActionKind.REMOVE, "api-5"),
        (ActionKind.REMOVE, "api-1"),
        (ActionKind.REMOVE, "api-0"),
        (ActionKind.REMOVE, "web-0"),
    ]
    assert actions[0].slot == ReplicaSlot("api", 5)
