import datetime as dt

import pytest

import hog_board as hb
from helpers import make_config, make_data, make_issue, make_repo


def _groups(tree, section=0):
    return [(g.label, len(g.issues)) for g in tree.sections[section].groups]


def _single_repo_data(issues, options, **repo_overrides):
    repo = make_repo(**repo_overrides)
    return hb.DashboardData(repos=[hb.RepoData(repo=repo, issues=issues, status_options=options)])


def test_groups_follow_status_options_and_skip_terminal():
    options = [hb.StatusOption("a", "Planning"), hb.StatusOption("b", "In Progress"), hb.StatusOption("c", "Done")]
    data = _single_repo_data([make_issue(1, "Planning"), make_issue(2, "In Progress")], options)
    tree = hb.build_board_tree(data)
    assert _groups(tree) == [("Planning", 1), ("In Progress", 1)]


def test_configured_groups_merge_statuses_under_first_label():
    issues = [make_issue(1, "Todo"), make_issue(2, "Todo"), make_issue(3, "Backlog")]
    data = _single_repo_data(issues, [], status_groups=["Todo,Backlog"])
    tree = hb.build_board_tree(data)
    assert _groups(tree) == [("Todo", 3)]
    assert tree.sections[0].groups[0].sub_id == "sub:acme/api:Todo"


def test_missing_status_lands_in_backlog():
    options = [hb.StatusOption("a", "Todo")]
    data = _single_repo_data([make_issue(1, None), make_issue(2, "Todo")], options)
    assert _groups(hb.build_board_tree(data)) == [("Todo", 1), ("Backlog", 1)]


def test_uncovered_status_becomes_overflow_group():
    data = _single_repo_data([make_issue(1, "Todo"), make_issue(2, "Blocked"), make_issue(3, "Done")],
                             [], status_groups=["Todo"])
    assert _groups(hb.build_board_tree(data)) == [("Todo", 1), ("Blocked", 1)]


def test_status_matching_ignores_case_and_spaces():
    data = _single_repo_data([make_issue(1, " in progress ")], [], status_groups=["In Progress"])
    assert _groups(hb.build_board_tree(data)) == [("In Progress", 1)]


def test_fallback_groups_without_options():
    groups = hb.resolve_status_groups([])
    assert [g.label for g in groups] == ["In Progress", "Backlog"]


def test_issues_sorted_by_priority_label_stably():
    issues = [
        make_issue(1, labels=["priority:low"]),
        make_issue(2),
        make_issue(3, labels=["priority:critical"]),
        make_issue(4, labels=["priority:low"]),
    ]
    data = _single_repo_data(issues, [hb.StatusOption("a", "Todo")])
    group = hb.build_board_tree(data).sections[0].groups[0]
    assert [i.number for i in group.issues] == [3, 1, 4, 2]


@pytest.mark.parametrize("status, terminal", [
    ("Done", True), ("shipped", True), ("Won't", True), ("COMPLETED", True),
    ("In Progress", False), ("Done soon", False), (None, False),
])
def test_is_terminal_status(status, terminal):
    assert hb.is_terminal_status(status) is terminal


def test_error_and_empty_sections_have_no_groups():
    config = make_config()
    data = hb.DashboardData(repos=[
        hb.RepoData(repo=config.repos[0], error="boom"),
        hb.RepoData(repo=config.repos[1], issues=[]),
    ])
    tree = hb.build_board_tree(data)
    assert tree.sections[0].error == "boom"
    assert tree.sections[0].groups == []
    assert tree.sections[1].groups == []
    ids = [i.id for i in hb.build_nav_items(tree)]
    assert ids == ["header:acme/api", "header:acme/web"]


def test_nav_items_layout(config):
    tree = hb.build_board_tree(make_data(config))
    items = hb.build_nav_items(tree)
    api = [(i.id, i.kind, i.parent_group_id) for i in items if i.section_id == "acme/api"]
    assert api == [
        ("header:acme/api", hb.HEADER, None),
        ("sub:acme/api:Todo", hb.SUB_HEADER, None),
        ("gh:acme/api:1", hb.ITEM, "sub:acme/api:Todo"),
        ("gh:acme/api:2", hb.ITEM, "sub:acme/api:Todo"),
        ("sub:acme/api:In Progress", hb.SUB_HEADER, None),
        ("gh:acme/api:3", hb.ITEM, "sub:acme/api:In Progress"),
    ]


def test_tasks_and_activity_sections(config):
    data = make_data(config)
    when = dt.datetime(2024, 1, 1, 12, 0)
    event = hb.ActivityEvent("commented", "api", 1, "octocat", "hello", when)
    data.tasks = [hb.Task(id="t1", title="Call mom")]
    data.activity = [event, event]
    items = hb.build_nav_items(hb.build_board_tree(data))
    tail = [i.id for i in items[-5:]]
    base = "act:api:1:commented:2024-01-01T12:00:00"
    assert tail == ["header:ticktick", "tt:t1", "header:activity", base, base + "#2"]


def test_nav_ids_are_stable_across_rebuilds(config):
    data = make_data(config)
    first = [i.id for i in hb.build_nav_items(hb.build_board_tree(data))]
    second = [i.id for i in hb.build_nav_items(hb.build_board_tree(data))]
    assert first == second


def test_id_helpers():
    assert hb.parse_issue_nav_id("gh:acme/api:42") == ("acme/api", 42)
    assert hb.parse_issue_nav_id("tt:42") is None
    assert hb.section_for_id("tt:9") == hb.TASKS_SECTION
    assert hb.section_for_id("header:acme/api") is None
    assert hb.is_header_id("sub:acme/api:Todo")
    assert not hb.is_header_id("gh:acme/api:1")
