import asyncio

import pytest
import requests

import hog_board as hb
from helpers import make_config, make_repo


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text
        self.headers = {}

    def json(self):
        return self._payload


class FakeSession:
    def __init__(self, responses=None):
        self.requests = []
        self.responses = list(responses or [])

    def request(self, method, url, json=None, timeout=None):
        self.requests.append((method, url, json))
        return self.responses.pop(0) if self.responses else FakeResponse(200, {})


def issue_node(number, status=None, project_number=1, labels=(), assignees=()):
    return {
        "number": number,
        "title": f"Issue {number}",
        "url": f"https://github.com/acme/api/issues/{number}",
        "state": "OPEN",
        "updatedAt": "2024-01-01T00:00:00Z",
        "body": "",
        "labels": {"nodes": [{"name": l} for l in labels]},
        "assignees": {"nodes": [{"login": a} for a in assignees]},
        "projectItems": {"nodes": [{
            "id": f"item-{number}",
            "project": {"id": "proj", "number": project_number},
            "fieldValueByName": {"name": status, "optionId": "x"} if status else None,
        }]},
    }


def test_client_requires_token():
    with pytest.raises(RuntimeError):
        hb.GitHubClient("")


def test_rest_error_raises_with_status():
    session = FakeSession([FakeResponse(422, text="Validation Failed")])
    client = hb.GitHubClient("t", session=session)
    with pytest.raises(RuntimeError) as exc:
        client.add_assignees("acme/api", 1, ["me"])
    assert "422" in str(exc.value)
    assert session.requests == [("POST", "https://api.github.com/repos/acme/api/issues/1/assignees",
                                 {"assignees": ["me"]})]


def test_remove_label_quotes_name():
    session = FakeSession()
    hb.GitHubClient("t", session=session).remove_label("acme/api", 1, "good first issue")
    assert session.requests[0][1].endswith("/labels/good%20first%20issue")


def test_create_issue_returns_number():
    session = FakeSession([FakeResponse(201, {"number": 77})])
    assert hb.GitHubClient("t", session=session).create_issue("acme/api", "T", labels=["bug"]) == 77
    assert session.requests[0][2] == {"title": "T", "body": "", "labels": ["bug"]}


def test_fetch_repo_issues_paginates_and_reads_status(monkeypatch):
    pages = [
        {"data": {"repository": {"issues": {
            "pageInfo": {"hasNextPage": True, "endCursor": "c1"},
            "nodes": [issue_node(1, "Todo", labels=["bug"], assignees=["me"])],
        }}}},
        {"data": {"repository": {"issues": {
            "pageInfo": {"hasNextPage": False, "endCursor": None},
            "nodes": [issue_node(2, "Todo", project_number=9)],
        }}}},
    ]
    seen = []

    def fake_graphql(_session, _query, variables, on_wait=None):
        seen.append(variables["after"])
        return pages.pop(0)

    monkeypatch.setattr(hb, "_graphql_with_backoff", fake_graphql)
    issues = hb.GitHubClient("t", session=FakeSession()).fetch_repo_issues(make_repo())
    assert seen == [None, "c1"]
    assert [(i.number, i.project_status, i.labels, i.assignees) for i in issues] == [
        (1, "Todo", ["bug"], ["me"]),
        (2, None, [], []),
    ]


def test_graphql_errors_raise(monkeypatch):
    monkeypatch.setattr(hb, "_graphql_with_backoff", lambda *a, **k: {"errors": [{"message": "nope"}]})
    with pytest.raises(RuntimeError) as exc:
        hb.GitHubClient("t", session=FakeSession()).status_options("FIELD")
    assert "nope" in str(exc.value)


def test_status_options_cached(monkeypatch):
    calls = []

    def fake_graphql(_session, _query, variables, on_wait=None):
        calls.append(variables)
        return {"data": {"node": {"options": [{"id": "o1", "name": "Todo"}, {"id": "", "name": "skip"}]}}}

    monkeypatch.setattr(hb, "_graphql_with_backoff", fake_graphql)
    client = hb.GitHubClient("t", session=FakeSession())
    assert client.status_options("F") == [hb.StatusOption("o1", "Todo")]
    client.status_options("F")
    assert len(calls) == 1


def test_project_item_lookup_and_missing(monkeypatch):
    resp = {"data": {"repository": {"issue": {"projectItems": {"nodes": [
        {"id": "item-a", "project": {"id": "p1", "number": 1}},
    ]}}}}}
    monkeypatch.setattr(hb, "_graphql_with_backoff", lambda *a, **k: resp)
    client = hb.GitHubClient("t", session=FakeSession())
    assert client.project_item("acme/api", 5, 1) == ("p1", "item-a")
    with pytest.raises(RuntimeError):
        client.project_item("acme/api", 5, 2)


def test_backoff_retries_rate_limited(monkeypatch):
    responses = [{"errors": [{"type": "RATE_LIMITED"}]}, {"data": {"ok": True}}]
    monkeypatch.setattr(hb, "_graphql_raw", lambda *a: responses.pop(0))
    waits = []
    monkeypatch.setattr(hb, "_retry_sleep", lambda seconds, on_wait=None: waits.append(seconds))
    assert hb._graphql_with_backoff(None, "q", {}) == {"data": {"ok": True}}
    assert waits == [10]


def test_backoff_gives_up_on_connection_errors(monkeypatch):
    def boom(*a):
        raise requests.exceptions.ConnectionError("down")

    monkeypatch.setattr(hb, "_graphql_raw", boom)
    monkeypatch.setattr(hb, "_retry_sleep", lambda seconds, on_wait=None: None)
    with pytest.raises(requests.exceptions.ConnectionError):
        hb._graphql_with_backoff(None, "q", {}, max_total_wait=30)


def test_data_provider_marks_failing_repo(monkeypatch):
    config = make_config()
    client = hb.GitHubClient("t", session=FakeSession())

    def fetch(repo):
        if repo.name == "acme/web":
            raise RuntimeError("403 forbidden")
        return [hb.Issue(number=1, title="ok")]

    monkeypatch.setattr(client, "fetch_repo_issues", fetch)
    monkeypatch.setattr(client, "status_options", lambda field_id: [])
    data = asyncio.run(hb.GitHubDataProvider(client, config).fetch())
    assert [rd.error for rd in data.repos] == [None, "403 forbidden"]
    assert data.repos[0].issues[0].title == "ok"


def test_data_provider_raises_when_every_repo_fails(monkeypatch):
    config = make_config()
    client = hb.GitHubClient("t", session=FakeSession())
    def offline(field_id):
        raise RuntimeError("offline")

    monkeypatch.setattr(client, "status_options", offline)
    with pytest.raises(RuntimeError):
        asyncio.run(hb.GitHubDataProvider(client, config).fetch())


def test_mutation_provider_updates_status_through_project_item(monkeypatch):
    client = hb.GitHubClient("t", session=FakeSession())
    calls = []
    monkeypatch.setattr(client, "project_item", lambda repo, number, project: ("p1", "item-1"))
    monkeypatch.setattr(client, "set_project_status", lambda *args: calls.append(args))
    asyncio.run(hb.GitHubMutationProvider(client).update_status(make_repo(), 5, "opt"))
    assert calls == [("p1", "item-1", "FIELD", "opt")]


def repo_event(kind, number, created_at, action=None, body=None, title="Crash on save", actor="octocat"):
    payload = {"issue": {"number": number, "title": title}}
    if action:
        payload["action"] = action
    if body is not None:
        payload["comment"] = {"body": body}
    return {"type": kind, "actor": {"login": actor}, "payload": payload, "created_at": created_at}


def test_recent_activity_maps_issue_events():
    events = [
        repo_event("IssueCommentEvent", 4, "2024-01-02T10:00:00Z", body="line one\nline two"),
        repo_event("IssuesEvent", 3, "2024-01-02T09:00:00Z", action="opened"),
        repo_event("IssuesEvent", 3, "2024-01-02T08:30:00Z", action="reopened"),
        repo_event("PushEvent", 0, "2024-01-02T08:00:00Z"),
        repo_event("IssuesEvent", 2, "2023-12-30T08:00:00Z", action="closed"),
    ]
    session = FakeSession([FakeResponse(200, events)])
    client = hb.GitHubClient("t", session=session)
    since = hb.dt.datetime(2024, 1, 1, 12, tzinfo=hb.dt.timezone.utc)
    got = client.recent_activity(make_repo(), since)
    assert session.requests[0][1] == "https://api.github.com/repos/acme/api/events?per_page=100"
    assert [(e.type, e.issue_number) for e in got] == [("commented", 4), ("opened", 3)]
    assert got[0].summary == 'commented on #4: "line one line two"'
    assert got[1].summary == "opened #3: Crash on save"
    assert got[1].actor == "octocat"
    assert got[0].repo_short_name == "api"


def test_long_comment_preview_is_truncated():
    event = hb._parse_activity_event(
        repo_event("IssueCommentEvent", 9, "2024-01-02T10:00:00Z", body="x" * 80), "api")
    assert event.summary == 'commented on #9: "' + "x" * 60 + '..."'


def test_data_provider_merges_activity_newest_first(monkeypatch):
    config = make_config()
    client = hb.GitHubClient("t", session=FakeSession())
    now = hb.dt.datetime.now(hb.dt.timezone.utc)

    def activity(repo, since):
        if repo.short_name == "web":
            raise RuntimeError("events unavailable")
        return [hb.ActivityEvent("opened", repo.short_name, n, "me", f"opened #{n}",
                                 now - hb.dt.timedelta(minutes=n)) for n in (5, 1)] * 10

    monkeypatch.setattr(client, "fetch_repo_issues", lambda repo: [])
    monkeypatch.setattr(client, "status_options", lambda field_id: [])
    monkeypatch.setattr(client, "recent_activity", activity)
    data = asyncio.run(hb.GitHubDataProvider(client, config).fetch())
    assert [rd.error for rd in data.repos] == [None, None]
    assert len(data.activity) == hb.MAX_ACTIVITY_EVENTS
    assert data.activity[0].issue_number == 1
    assert data.activity[-1].issue_number == 5
