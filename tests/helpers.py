import dataclasses

import hog_board as hb

STATUS_OPTIONS = [
    hb.StatusOption("opt-todo", "Todo"),
    hb.StatusOption("opt-progress", "In Progress"),
    hb.StatusOption("opt-done", "Done"),
]


def make_repo(name="acme/api", short_name="api", **overrides):
    fields = dict(
        name=name,
        short_name=short_name,
        project_number=1,
        status_field_id="FIELD",
        completion_action=hb.CompletionAction(type="close_issue"),
        status_groups=None,
    )
    fields.update(overrides)
    return hb.RepoConfig(**fields)


def make_config(**board):
    settings = dict(assignee="me")
    settings.update(board)
    return hb.Config(
        board=hb.BoardConfig(**settings),
        repos=[make_repo(), make_repo("acme/web", "web")],
    )


def make_issue(number, status="Todo", **overrides):
    fields = dict(number=number, title=f"Issue {number}", project_status=status)
    fields.update(overrides)
    return hb.Issue(**fields)


def make_data(config, issues_by_repo=None):
    issues_by_repo = issues_by_repo or {
        "acme/api": [make_issue(1), make_issue(2), make_issue(3, "In Progress")],
        "acme/web": [make_issue(10), make_issue(11, "In Progress")],
    }
    repos = [
        hb.RepoData(repo=repo, issues=list(issues_by_repo.get(repo.name, [])), status_options=list(STATUS_OPTIONS))
        for repo in config.repos
    ]
    return hb.DashboardData(repos=repos)


def issue_in(data, repo_name, number):
    for rd in data.repos:
        if rd.repo.name == repo_name:
            for issue in rd.issues:
                if issue.number == number:
                    return issue
    return None


class FakeDataProvider(hb.DataProvider):
    """Returns a fixed snapshot and counts fetches."""

    def __init__(self, data, error=None):
        self.data = data
        self.error = error
        self.fetch_count = 0

    async def fetch(self):
        self.fetch_count += 1
        if self.error is not None:
            raise self.error
        return dataclasses.replace(self.data)


class FakeMutationProvider(hb.MutationProvider):
    """Records calls; numbers listed in fail_on reject."""

    def __init__(self, fail_on=(), fail_calls=()):
        self.calls = []
        self.fail_on = set(fail_on)
        self.fail_calls = set(fail_calls)
        self.next_number = 500
        self.on_call = None

    async def _record(self, name, number, *args):
        self.calls.append((name, number) + tuple(args))
        if self.on_call is not None:
            self.on_call(name, number)
        if number in self.fail_on or name in self.fail_calls:
            raise RuntimeError(f"{name} #{number} rejected")
        return None

    async def assign(self, repo, number, login):
        return await self._record("assign", number, login)

    async def unassign(self, repo, number, login):
        return await self._record("unassign", number, login)

    async def update_status(self, repo, number, option_id):
        return await self._record("update_status", number, option_id)

    async def add_label(self, repo, number, label):
        return await self._record("add_label", number, label)

    async def remove_label(self, repo, number, label):
        return await self._record("remove_label", number, label)

    async def add_comment(self, repo, number, body):
        return await self._record("add_comment", number, body)

    async def create_issue(self, repo, title, body="", labels=None):
        await self._record("create_issue", None, title)
        self.next_number += 1
        return self.next_number

    async def close_issue(self, repo, number):
        return await self._record("close_issue", number)

    async def reopen_issue(self, repo, number):
        return await self._record("reopen_issue", number)

    async def fetch_comments(self, repo, number):
        await self._record("fetch_comments", number)
        return [hb.IssueComment(author="octocat", body="hi")]


def make_session(config=None, data=None, mutations=None, **kwargs):
    import asyncio

    config = config or make_config()
    provider = FakeDataProvider(data or make_data(config))
    mutations = mutations or FakeMutationProvider()
    session = hb.BoardSession(config, provider, mutations, **kwargs)
    asyncio.run(session.store.refresh())
    return session, provider, mutations
