#!/usr/bin/env python3
# hog_board: terminal board for GitHub Projects issues spread over many repos
#
# Hotkeys (normal mode)
#   j/k, arrows   move cursor
#   tab / s-tab   next / previous repo section
#   enter         collapse or expand the section / status group under the cursor
#   C             collapse every section
#   space         select issue for bulk actions (one repo at a time)
#   m             change status (bulk menu while issues are selected)
#   p             pick: assign the issue to yourself
#   U             unassign yourself
#   l             edit labels (+name adds, -name removes)
#   c             comment
#   o             issue detail with comments
#   n             new issue in the current repo
#   f             focus mode on the selected row
#   /             search titles and jump to the first match
#   u             undo the last undoable action
#   r             refresh now
#   ?             toggle help
#   esc           close overlay / leave multi-select / leave focus
#   q             quit
#
# Config is YAML (see load_config). GITHUB_TOKEN comes from the environment or .env.
# MOCK_FETCH=1 (or --mock) serves generated data and keeps mutations in memory.

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import datetime as dt
import logging
import os
import re
import sqlite3
import sys
import time
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

import requests
import yaml
from prompt_toolkit import Application
from prompt_toolkit.filters import Condition
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.keys import Keys
from prompt_toolkit.layout import HSplit, Layout, Window
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.styles import Style

log = logging.getLogger("hog_board")


# -----------------------------
# Config
# -----------------------------
COMPLETION_ACTION_TYPES = ("close_issue", "add_label", "update_project_status")
REPO_NAME_RE = re.compile(r"^[\w.-]+/[\w.-]+$")
DEFAULT_REFRESH_INTERVAL = 60
MIN_REFRESH_INTERVAL = 10
DEFAULT_FOCUS_DURATION = 1500
MIN_FOCUS_DURATION = 60


@dataclass
class CompletionAction:
    type: str
    label: str = ""
    option_id: str = ""


@dataclass
class RepoConfig:
    name: str  # owner/repo
    short_name: str
    project_number: int
    status_field_id: str
    completion_action: CompletionAction
    status_groups: Optional[List[str]] = None


@dataclass
class BoardConfig:
    assignee: str
    refresh_interval: int = DEFAULT_REFRESH_INTERVAL
    focus_duration: int = DEFAULT_FOCUS_DURATION


@dataclass
class Config:
    board: BoardConfig
    repos: List[RepoConfig]
    ticktick_enabled: bool = False

    def find_repo(self, name: str) -> Optional[RepoConfig]:
        for repo in self.repos:
            if repo.name == name:
                return repo
        return None


def _parse_completion_action(raw: object, repo_name: str) -> CompletionAction:
    if not isinstance(raw, dict):
        raise ValueError(f"Config: repo {repo_name} needs a 'completion_action' mapping.")
    kind = str(raw.get("type") or "").strip()
    if kind not in COMPLETION_ACTION_TYPES:
        raise ValueError(f"Config: repo {repo_name} has unknown completion action {kind!r}.")
    label = str(raw.get("label") or "").strip()
    option_id = str(raw.get("option_id") or "").strip()
    if kind == "add_label" and not label:
        raise ValueError(f"Config: repo {repo_name} completion action 'add_label' needs 'label'.")
    if kind == "update_project_status" and not option_id:
        raise ValueError(f"Config: repo {repo_name} completion action 'update_project_status' needs 'option_id'.")
    return CompletionAction(type=kind, label=label, option_id=option_id)


def _parse_repo(item: object) -> RepoConfig:
    if not isinstance(item, dict):
        raise ValueError(f"Config: repo entry must be a mapping, got {item!r}.")
    name = str(item.get("name") or "").strip()
    if not REPO_NAME_RE.match(name):
        raise ValueError(f"Config: repo name must look like owner/repo, got {name!r}.")
    short_name = str(item.get("short_name") or "").strip()
    if not short_name:
        raise ValueError(f"Config: repo {name} needs 'short_name'.")
    try:
        project_number = int(item.get("project_number") or 0)
    except (TypeError, ValueError):
        project_number = 0
    if project_number <= 0:
        raise ValueError(f"Config: repo {name} needs a positive 'project_number'.")
    status_field_id = str(item.get("status_field_id") or "").strip()
    if not status_field_id:
        raise ValueError(f"Config: repo {name} needs 'status_field_id'.")
    groups_raw = item.get("status_groups")
    status_groups: Optional[List[str]] = None
    if groups_raw is not None:
        if not isinstance(groups_raw, list):
            raise ValueError(f"Config: repo {name} 'status_groups' must be a list.")
        status_groups = [str(g).strip() for g in groups_raw if str(g).strip()]
    return RepoConfig(
        name=name,
        short_name=short_name,
        project_number=project_number,
        status_field_id=status_field_id,
        completion_action=_parse_completion_action(item.get("completion_action"), name),
        status_groups=status_groups,
    )


def _board_seconds(board_raw: Dict, key: str, default: int) -> int:
    value = board_raw.get(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Config: 'board.{key}' must be a whole number of seconds, got {value!r}.") from None


def config_from_dict(raw: Dict) -> Config:
    board_raw = raw.get("board") or {}
    if not isinstance(board_raw, dict):
        raise ValueError("Config: 'board' must be a mapping.")
    assignee = str(board_raw.get("assignee") or "").strip()
    if not assignee:
        raise ValueError("Config: 'board.assignee' is required.")
    refresh_interval = _board_seconds(board_raw, "refresh_interval", DEFAULT_REFRESH_INTERVAL)
    if refresh_interval < MIN_REFRESH_INTERVAL:
        raise ValueError(f"Config: 'board.refresh_interval' must be at least {MIN_REFRESH_INTERVAL} seconds.")
    focus_duration = _board_seconds(board_raw, "focus_duration", DEFAULT_FOCUS_DURATION)
    if focus_duration < MIN_FOCUS_DURATION:
        raise ValueError(f"Config: 'board.focus_duration' must be at least {MIN_FOCUS_DURATION} seconds.")
    repos_raw = raw.get("repos") or []
    if not isinstance(repos_raw, list):
        raise ValueError("Config: 'repos' must be a list.")
    repos = [_parse_repo(item) for item in repos_raw]
    seen: Set[str] = set()
    for repo in repos:
        if repo.name in seen:
            raise ValueError(f"Config: repo {repo.name} is listed twice.")
        seen.add(repo.name)
    ticktick_raw = raw.get("ticktick") or {}
    ticktick_enabled = bool(ticktick_raw.get("enabled", False)) if isinstance(ticktick_raw, dict) else False
    return Config(
        board=BoardConfig(assignee=assignee, refresh_interval=refresh_interval, focus_duration=focus_duration),
        repos=repos,
        ticktick_enabled=ticktick_enabled,
    )


def load_config(path: str) -> Config:
    """Read the YAML config file.

    Expected shape::

        board: {assignee: octocat, refresh_interval: 60, focus_duration: 1500}
        repos:
          - name: acme/api
            short_name: api
            project_number: 3
            status_field_id: PVTSSF_x
            completion_action: {type: close_issue}
            status_groups: ["In Progress", "Todo,Backlog"]
        ticktick: {enabled: false}
    """
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config: top level must be a mapping.")
    return config_from_dict(raw)


def load_dotenv_token() -> Optional[str]:
    """Load TOKEN or GITHUB_TOKEN from a .env file (current dir or module dir) if present."""
    candidates = [os.getcwd(), os.path.dirname(os.path.abspath(__file__))]
    for base in candidates:
        path = os.path.join(base, ".env")
        if not os.path.isfile(path):
            continue
        try:
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line or line.startswith('#') or '=' not in line:
                        continue
                    k, v = line.split('=', 1)
                    k = k.strip()
                    v = v.strip().strip('"').strip("'")
                    if k in ("TOKEN", "GITHUB_TOKEN") and v:
                        os.environ.setdefault("GITHUB_TOKEN", v)
                        return v
        except OSError:
            log.debug("Could not read %s", path, exc_info=True)
            continue
    return None


def resolve_token() -> Optional[str]:
    return os.environ.get("GITHUB_TOKEN") or load_dotenv_token()


# -----------------------------
# Logging
# -----------------------------
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def setup_logging(log_path: str, level: str = "ERROR") -> logging.Logger:
    logger = logging.getLogger("hog_board")
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.setLevel(logging.DEBUG)
    directory = os.path.dirname(log_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    fh = RotatingFileHandler(log_path, maxBytes=2000000, backupCount=2, encoding='utf-8')
    lvl = getattr(logging, str(level).upper(), None)
    if not isinstance(lvl, int):
        lvl = logging.ERROR
    fh.setLevel(lvl)
    fh.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(fh)
    logger.propagate = False
    return logger


# -----------------------------
# Domain records
# -----------------------------
@dataclass
class StatusOption:
    id: str
    name: str


@dataclass
class Issue:
    number: int
    title: str
    url: str = ""
    state: str = "OPEN"
    updated_at: str = ""
    labels: List[str] = field(default_factory=list)
    assignees: List[str] = field(default_factory=list)
    project_status: Optional[str] = None
    body: str = ""


@dataclass
class RepoData:
    repo: RepoConfig
    issues: List[Issue] = field(default_factory=list)
    status_options: List[StatusOption] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class Task:
    id: str
    title: str
    priority: int = 0
    due_date: str = ""


@dataclass
class ActivityEvent:
    type: str  # opened, commented, closed, labeled, assigned ...
    repo_short_name: str
    issue_number: int
    actor: str
    summary: str
    timestamp: dt.datetime


@dataclass
class DashboardData:
    repos: List[RepoData]
    activity: List[ActivityEvent] = field(default_factory=list)
    tasks: List[Task] = field(default_factory=list)
    fetched_at: Optional[dt.datetime] = None


@dataclass
class IssueComment:
    author: str
    body: str
    created_at: str = ""


def patch_issue(data: DashboardData, repo_name: str, number: int,
                fn: Callable[[Issue], Issue]) -> DashboardData:
    """Return a copy of data with one issue replaced by fn(issue)."""
    repos = []
    for rd in data.repos:
        if rd.repo.name != repo_name:
            repos.append(rd)
            continue
        issues = [fn(issue) if issue.number == number else issue for issue in rd.issues]
        repos.append(dataclasses.replace(rd, issues=issues))
    return dataclasses.replace(data, repos=repos)


def insert_issue(data: DashboardData, repo_name: str, issue: Issue) -> DashboardData:
    repos = []
    for rd in data.repos:
        if rd.repo.name == repo_name and all(i.number != issue.number for i in rd.issues):
            rd = dataclasses.replace(rd, issues=[issue] + list(rd.issues))
        repos.append(rd)
    return dataclasses.replace(data, repos=repos)


def remove_issue(data: DashboardData, repo_name: str, number: int) -> DashboardData:
    repos = []
    for rd in data.repos:
        if rd.repo.name == repo_name:
            rd = dataclasses.replace(rd, issues=[i for i in rd.issues if i.number != number])
        repos.append(rd)
    return dataclasses.replace(data, repos=repos)


def _with_status(name: str) -> Callable[[Issue], Issue]:
    return lambda issue: dataclasses.replace(issue, project_status=name)


def _with_assignees(logins: List[str]) -> Callable[[Issue], Issue]:
    return lambda issue: dataclasses.replace(issue, assignees=list(logins))


def _with_labels(labels: List[str]) -> Callable[[Issue], Issue]:
    return lambda issue: dataclasses.replace(issue, labels=list(labels))


# -----------------------------
# Ids, status and priority helpers
# -----------------------------
TASKS_SECTION = "ticktick"
ACTIVITY_SECTION = "activity"
BACKLOG = "Backlog"
TERMINAL_STATUS_RE = re.compile(r"^(done|shipped|won't|wont|closed|complete|completed)$", re.IGNORECASE)
PRIORITY_RANK = {
    "priority:critical": 0,
    "priority:high": 1,
    "priority:medium": 2,
    "priority:low": 3,
}
NO_PRIORITY_RANK = 99


def is_terminal_status(status: Optional[str]) -> bool:
    return bool(TERMINAL_STATUS_RE.match((status or "").strip()))


def issue_priority_rank(issue: Issue) -> int:
    ranks = [PRIORITY_RANK[l.lower()] for l in issue.labels if l.lower() in PRIORITY_RANK]
    return min(ranks) if ranks else NO_PRIORITY_RANK


def issue_nav_id(repo_name: str, number: int) -> str:
    return f"gh:{repo_name}:{number}"


def task_nav_id(task_id: str) -> str:
    return f"tt:{task_id}"


def header_id(section_id: str) -> str:
    return f"header:{section_id}"


def sub_header_id(section_id: str, label: str) -> str:
    return f"sub:{section_id}:{label}"


def is_header_id(nav_id: Optional[str]) -> bool:
    return bool(nav_id) and (nav_id.startswith("header:") or nav_id.startswith("sub:"))


def parse_issue_nav_id(nav_id: Optional[str]) -> Optional[Tuple[str, int]]:
    if not nav_id or not nav_id.startswith("gh:"):
        return None
    repo_name, _, number = nav_id[3:].rpartition(":")
    if not repo_name or not number.isdigit():
        return None
    return repo_name, int(number)


def section_for_id(nav_id: Optional[str]) -> Optional[str]:
    """Section an item id can be multi-selected in (None for non-selectable rows)."""
    parsed = parse_issue_nav_id(nav_id)
    if parsed:
        return parsed[0]
    if nav_id and nav_id.startswith("tt:"):
        return TASKS_SECTION
    return None


def time_ago(when: Optional[dt.datetime], now: Optional[dt.datetime] = None) -> str:
    if when is None:
        return "never"
    now = now or dt.datetime.now(when.tzinfo)
    secs = max(0, int((now - when).total_seconds()))
    if secs < 60:
        return f"{secs}s ago"
    if secs < 3600:
        return f"{secs // 60}m ago"
    if secs < 86400:
        return f"{secs // 3600}h ago"
    return f"{secs // 86400}d ago"


# -----------------------------
# Board tree
# -----------------------------
@dataclass
class StatusGroup:
    label: str
    statuses: List[str]


@dataclass
class BoardGroup:
    label: str
    sub_id: str
    issues: List[Issue]


@dataclass
class BoardSection:
    repo: RepoConfig
    section_id: str
    groups: List[BoardGroup]
    error: Optional[str] = None

    @property
    def issue_count(self) -> int:
        return sum(len(g.issues) for g in self.groups)


@dataclass
class BoardTree:
    sections: List[BoardSection]
    tasks: List[Task] = field(default_factory=list)
    activity: List[ActivityEvent] = field(default_factory=list)


def _norm(status: str) -> str:
    return status.strip().lower()


def resolve_status_groups(status_options: List[StatusOption],
                          configured: Optional[List[str]] = None) -> List[StatusGroup]:
    """Group definitions for one repo.

    Configured entries are comma-separated status lists; the first name labels the group.
    Otherwise every non-terminal option becomes its own group, plus Backlog.
    """
    if configured:
        groups = []
        for entry in configured:
            statuses = [s.strip() for s in entry.split(",") if s.strip()]
            if statuses:
                groups.append(StatusGroup(label=statuses[0], statuses=statuses))
        return groups
    names = [o.name for o in status_options if not is_terminal_status(o.name)]
    if names and all(_norm(n) != _norm(BACKLOG) for n in names):
        names.append(BACKLOG)
    if not names:
        names = ["In Progress", BACKLOG]
    return [StatusGroup(label=n, statuses=[n]) for n in names]


def group_by_status(issues: Iterable[Issue]) -> Dict[str, List[Issue]]:
    buckets: Dict[str, List[Issue]] = {}
    for issue in issues:
        buckets.setdefault(issue.project_status or BACKLOG, []).append(issue)
    for status in buckets:
        buckets[status].sort(key=issue_priority_rank)
    return buckets


def build_board_tree(data: DashboardData) -> BoardTree:
    sections: List[BoardSection] = []
    for rd in data.repos:
        section_id = rd.repo.name
        if rd.error:
            sections.append(BoardSection(rd.repo, section_id, [], rd.error))
            continue
        by_status = group_by_status(rd.issues)
        covered: Set[str] = set()
        groups: List[BoardGroup] = []
        for sg in resolve_status_groups(rd.status_options, rd.repo.status_groups):
            wanted = {_norm(s) for s in sg.statuses}
            covered |= wanted
            issues: List[Issue] = []
            for status, bucket in by_status.items():
                if _norm(status) in wanted:
                    issues.extend(bucket)
            if not issues:
                continue
            issues.sort(key=issue_priority_rank)
            groups.append(BoardGroup(sg.label, sub_header_id(section_id, sg.label), issues))
        # statuses outside every group still show up, terminal ones never do
        for status, bucket in by_status.items():
            if _norm(status) in covered or is_terminal_status(status):
                continue
            groups.append(BoardGroup(status, sub_header_id(section_id, status), list(bucket)))
        sections.append(BoardSection(rd.repo, section_id, groups))
    return BoardTree(sections=sections, tasks=list(data.tasks), activity=list(data.activity))


# -----------------------------
# Navigation items
# -----------------------------
HEADER = "header"
SUB_HEADER = "sub_header"
ITEM = "item"


@dataclass(frozen=True)
class NavItem:
    id: str
    section_id: str
    kind: str
    parent_group_id: Optional[str] = None


def activity_nav_id(event: ActivityEvent) -> str:
    return f"act:{event.repo_short_name}:{event.issue_number}:{event.type}:{event.timestamp.isoformat()}"


def activity_nav_ids(events: List[ActivityEvent]) -> List[str]:
    """Stable ids for activity rows; repeated events get a #n suffix."""
    seen: Dict[str, int] = {}
    out = []
    for event in events:
        base = activity_nav_id(event)
        seen[base] = seen.get(base, 0) + 1
        out.append(base if seen[base] == 1 else f"{base}#{seen[base]}")
    return out


def build_nav_items(tree: BoardTree) -> List[NavItem]:
    items: List[NavItem] = []
    for section in tree.sections:
        items.append(NavItem(header_id(section.section_id), section.section_id, HEADER))
        for group in section.groups:
            items.append(NavItem(group.sub_id, section.section_id, SUB_HEADER))
            for issue in group.issues:
                items.append(NavItem(issue_nav_id(section.section_id, issue.number),
                                     section.section_id, ITEM, group.sub_id))
    if tree.tasks:
        items.append(NavItem(header_id(TASKS_SECTION), TASKS_SECTION, HEADER))
        for task in tree.tasks:
            items.append(NavItem(task_nav_id(task.id), TASKS_SECTION, ITEM))
    if tree.activity:
        items.append(NavItem(header_id(ACTIVITY_SECTION), ACTIVITY_SECTION, HEADER))
        for nav_id in activity_nav_ids(tree.activity):
            items.append(NavItem(nav_id, ACTIVITY_SECTION, ITEM))
    return items


def find_fallback(items: List[NavItem], old_section: Optional[str]) -> Optional[NavItem]:
    """Where the cursor lands when its item disappears.

    First item of the old section, then that section's header, then the first header, then anything.
    """
    if old_section is not None:
        for item in items:
            if item.section_id == old_section and item.kind == ITEM:
                return item
        for item in items:
            if item.section_id == old_section and item.kind == HEADER:
                return item
    for item in items:
        if item.kind == HEADER:
            return item
    return items[0] if items else None


def visible_nav_items(items: List[NavItem], collapsed: Set[str]) -> List[NavItem]:
    out = []
    for item in items:
        if item.kind == HEADER:
            out.append(item)
        elif header_id(item.section_id) in collapsed:
            continue
        elif item.parent_group_id is not None and item.parent_group_id in collapsed:
            continue
        else:
            out.append(item)
    return out


# -----------------------------
# Navigator
# -----------------------------
class Navigator:
    """Cursor and collapse state over the flattened board.

    The cursor is keyed by item id, never by index, so it survives refreshes
    that reorder or remove rows. Collapsed keys are header and sub-header ids.
    """

    def __init__(self, items: Optional[List[NavItem]] = None):
        self._items: List[NavItem] = []
        self._by_id: Dict[str, NavItem] = {}
        self._sections: List[str] = []
        self._loaded = False
        self._memo: Optional[Tuple[List[NavItem], frozenset, List[NavItem], Dict[str, int]]] = None
        self.collapsed: Set[str] = set()
        self.selected_id: Optional[str] = None
        self.selected_section: Optional[str] = None
        if items is not None:
            self.set_items(items)

    @property
    def items(self) -> List[NavItem]:
        return self._items

    @property
    def sections(self) -> List[str]:
        return list(self._sections)

    def set_items(self, items: List[NavItem]) -> None:
        if items is self._items and self._loaded:
            return
        self._items = items
        self._by_id = {item.id: item for item in items}
        self._sections = []
        for item in items:
            if item.section_id not in self._sections:
                self._sections.append(item.section_id)
        if not self._loaded and self._sections:
            self._loaded = True
            if ACTIVITY_SECTION in self._sections:
                self.collapsed.add(header_id(ACTIVITY_SECTION))
        current = self._by_id.get(self.selected_id) if self.selected_id else None
        if current is not None:
            # kept even when hidden; movement starts from its visible ancestor
            self.selected_section = current.section_id
            return
        self._select(find_fallback(self.visible_items(), self.selected_section))

    def visible_items(self) -> List[NavItem]:
        return self._visible()[0]

    def _visible(self) -> Tuple[List[NavItem], Dict[str, int]]:
        collapsed = frozenset(self.collapsed)
        memo = self._memo
        if memo is not None and memo[0] is self._items and memo[1] == collapsed:
            return memo[2], memo[3]
        visible = visible_nav_items(self._items, self.collapsed)
        positions = {item.id: idx for idx, item in enumerate(visible)}
        self._memo = (self._items, collapsed, visible, positions)
        return visible, positions

    def _anchor(self, item: NavItem) -> str:
        """Nearest visible ancestor of a hidden item."""
        if header_id(item.section_id) in self.collapsed or item.parent_group_id is None:
            return header_id(item.section_id)
        return item.parent_group_id

    @property
    def selected_item(self) -> Optional[NavItem]:
        return self._by_id.get(self.selected_id) if self.selected_id else None

    @property
    def selected_index(self) -> int:
        """Row of the cursor in the visible list, or -1 without a cursor."""
        visible, positions = self._visible()
        item = self.selected_item
        if item is None:
            return -1
        if item.id in positions:
            return positions[item.id]
        return positions.get(self._anchor(item), -1)

    def is_collapsed(self, key: str) -> bool:
        return key in self.collapsed

    def _select(self, item: Optional[NavItem]) -> None:
        self.selected_id = item.id if item else None
        self.selected_section = item.section_id if item else None

    def _cursor_hidden(self) -> bool:
        item = self.selected_item
        return item is not None and item.id not in self._visible()[1]

    def move_down(self) -> None:
        visible = self.visible_items()
        if not visible:
            return
        pos = self.selected_index
        if pos < 0:
            self._select(visible[0])
        elif pos + 1 < len(visible):
            self._select(visible[pos + 1])

    def move_up(self) -> None:
        visible = self.visible_items()
        if not visible:
            return
        pos = self.selected_index
        if pos < 0:
            self._select(visible[0])
        elif self._cursor_hidden():
            self._select(visible[pos])
        elif pos > 0:
            self._select(visible[pos - 1])

    def next_section(self) -> None:
        self._jump_section(1)

    def prev_section(self) -> None:
        self._jump_section(-1)

    def _jump_section(self, step: int) -> None:
        item = self.selected_item
        if item is None:
            return
        headers = [i for i in self.visible_items() if i.kind == HEADER]
        order = [h.section_id for h in headers]
        if item.section_id not in order:
            return
        target = order.index(item.section_id) + step
        if 0 <= target < len(headers):
            self._select(headers[target])

    def select(self, nav_id: str) -> None:
        item = self._by_id.get(nav_id)
        if item is None:
            return
        # jumping onto a hidden row opens its section and group
        self.collapsed.discard(header_id(item.section_id))
        if item.parent_group_id:
            self.collapsed.discard(item.parent_group_id)
        self._select(item)

    def toggle_section(self) -> None:
        visible = self.visible_items()
        pos = self.selected_index
        if pos < 0:
            return
        current = visible[pos]
        key = current.id if current.kind == SUB_HEADER else header_id(current.section_id)
        if key in self.collapsed:
            self.collapsed.discard(key)
        else:
            self.collapsed.add(key)
        self._relocate_hidden_cursor()

    def collapse_all(self) -> None:
        self.collapsed |= {header_id(s) for s in self._sections}
        self._relocate_hidden_cursor()

    def expand_all(self) -> None:
        self.collapsed.clear()

    def _relocate_hidden_cursor(self) -> None:
        item = self.selected_item
        if item is None or not self._cursor_hidden():
            return
        self._select(self._by_id.get(self._anchor(item)))


# -----------------------------
# Multi-select
# -----------------------------
class MultiSelect:
    """Ordered set of selected item ids, all from one section."""

    def __init__(self, section_for: Callable[[str], Optional[str]] = section_for_id):
        self._section_for = section_for
        self._selected: Dict[str, None] = {}
        self.constrained_section: Optional[str] = None

    @property
    def selected(self) -> Tuple[str, ...]:
        return tuple(self._selected)

    @property
    def count(self) -> int:
        return len(self._selected)

    def is_selected(self, nav_id: str) -> bool:
        return nav_id in self._selected

    def toggle(self, nav_id: str) -> bool:
        """Flip membership; an id from another section starts a new selection."""
        section = self._section_for(nav_id)
        if section is None:
            return False
        if nav_id in self._selected:
            del self._selected[nav_id]
            if not self._selected:
                self.constrained_section = None
            return True
        if self.constrained_section is not None and section != self.constrained_section:
            self._selected = {}
        self._selected[nav_id] = None
        self.constrained_section = section
        return True

    def prune(self, valid_ids: Iterable[str]) -> None:
        valid = set(valid_ids)
        self._selected = {k: None for k in self._selected if k in valid}
        if not self._selected:
            self.constrained_section = None

    def clear(self) -> None:
        self._selected = {}
        self.constrained_section = None


# -----------------------------
# UI modes
# -----------------------------
NORMAL = "normal"
MULTI_SELECT = "multi_select"
SEARCH = "search"
FOCUS = "focus"
OVERLAY_STATUS = "overlay:status"
OVERLAY_CREATE = "overlay:create"
OVERLAY_CREATE_NL = "overlay:create_nl"
OVERLAY_LABEL = "overlay:label"
OVERLAY_BULK_ACTION = "overlay:bulk_action"
OVERLAY_CONFIRM_PICK = "overlay:confirm_pick"
OVERLAY_EDIT_ISSUE = "overlay:edit_issue"
OVERLAY_FUZZY_PICKER = "overlay:fuzzy_picker"
OVERLAY_COMMENT = "overlay:comment"
OVERLAY_DETAIL = "overlay:detail"

# events
ENTER_SEARCH = "enter_search"
ENTER_COMMENT = "enter_comment"
ENTER_STATUS = "enter_status"
ENTER_CREATE = "enter_create"
ENTER_CREATE_NL = "enter_create_nl"
ENTER_LABEL = "enter_label"
ENTER_MULTI_SELECT = "enter_multi_select"
ENTER_BULK_ACTION = "enter_bulk_action"
ENTER_CONFIRM_PICK = "enter_confirm_pick"
ENTER_FOCUS = "enter_focus"
ENTER_FUZZY_PICKER = "enter_fuzzy_picker"
ENTER_EDIT_ISSUE = "enter_edit_issue"
ENTER_DETAIL = "enter_detail"
TOGGLE_HELP = "toggle_help"
EXIT_OVERLAY = "exit_overlay"
EXIT_TO_NORMAL = "exit_to_normal"
CLEAR_MULTI_SELECT = "clear_multi_select"

_ENTRY_FROM_NORMAL = {
    ENTER_SEARCH: SEARCH,
    ENTER_COMMENT: OVERLAY_COMMENT,
    ENTER_CREATE: OVERLAY_CREATE,
    ENTER_CREATE_NL: OVERLAY_CREATE_NL,
    ENTER_LABEL: OVERLAY_LABEL,
    ENTER_FOCUS: FOCUS,
    ENTER_FUZZY_PICKER: OVERLAY_FUZZY_PICKER,
    ENTER_EDIT_ISSUE: OVERLAY_EDIT_ISSUE,
    ENTER_DETAIL: OVERLAY_DETAIL,
}


@dataclass(frozen=True)
class UIState:
    mode: str = NORMAL
    help_visible: bool = False
    previous_mode: str = NORMAL

    @property
    def is_overlay(self) -> bool:
        return self.mode.startswith("overlay:") or self.mode == SEARCH

    @property
    def can_navigate(self) -> bool:
        return self.mode in (NORMAL, MULTI_SELECT, FOCUS)

    @property
    def can_act(self) -> bool:
        return self.mode == NORMAL


def transition(state: UIState, event: str) -> UIState:
    """Next UI state; disallowed events return the very same state object."""
    if event in _ENTRY_FROM_NORMAL:
        if state.mode != NORMAL:
            return state
        return dataclasses.replace(state, mode=_ENTRY_FROM_NORMAL[event], previous_mode=NORMAL)
    if event == ENTER_CONFIRM_PICK:
        if state.mode == OVERLAY_CONFIRM_PICK:
            return state
        return dataclasses.replace(state, mode=OVERLAY_CONFIRM_PICK, previous_mode=NORMAL)
    if event == ENTER_STATUS:
        if state.mode not in (NORMAL, OVERLAY_BULK_ACTION):
            return state
        previous = MULTI_SELECT if state.mode == OVERLAY_BULK_ACTION else NORMAL
        return dataclasses.replace(state, mode=OVERLAY_STATUS, previous_mode=previous)
    if event == ENTER_MULTI_SELECT:
        if state.mode != NORMAL:
            return state
        return dataclasses.replace(state, mode=MULTI_SELECT, previous_mode=NORMAL)
    if event == ENTER_BULK_ACTION:
        if state.mode != MULTI_SELECT:
            return state
        return dataclasses.replace(state, mode=OVERLAY_BULK_ACTION, previous_mode=MULTI_SELECT)
    if event == TOGGLE_HELP:
        return dataclasses.replace(state, help_visible=not state.help_visible)
    if event == EXIT_OVERLAY:
        if state.help_visible:
            return dataclasses.replace(state, help_visible=False)
        if state.mode == NORMAL:
            return state
        return dataclasses.replace(state, mode=state.previous_mode, previous_mode=NORMAL)
    if event == EXIT_TO_NORMAL:
        if state.mode == NORMAL and not state.help_visible:
            return state
        return UIState()
    if event == CLEAR_MULTI_SELECT:
        if state.mode != MULTI_SELECT:
            return state
        return dataclasses.replace(state, mode=NORMAL, previous_mode=NORMAL)
    return state


class UIModeMachine:
    def __init__(self) -> None:
        self.state = UIState()

    def dispatch(self, event: str) -> bool:
        nxt = transition(self.state, event)
        changed = nxt is not self.state
        if changed:
            log.debug("ui %s -> %s (%s)", self.state.mode, nxt.mode, event)
        self.state = nxt
        return changed

    @property
    def mode(self) -> str:
        return self.state.mode

    @property
    def can_navigate(self) -> bool:
        return self.state.can_navigate

    @property
    def can_act(self) -> bool:
        return self.state.can_act

    @property
    def is_overlay(self) -> bool:
        return self.state.is_overlay

    def enter_search(self) -> bool: return self.dispatch(ENTER_SEARCH)
    def enter_comment(self) -> bool: return self.dispatch(ENTER_COMMENT)
    def enter_status(self) -> bool: return self.dispatch(ENTER_STATUS)
    def enter_create(self) -> bool: return self.dispatch(ENTER_CREATE)
    def enter_create_nl(self) -> bool: return self.dispatch(ENTER_CREATE_NL)
    def enter_label(self) -> bool: return self.dispatch(ENTER_LABEL)
    def enter_multi_select(self) -> bool: return self.dispatch(ENTER_MULTI_SELECT)
    def enter_bulk_action(self) -> bool: return self.dispatch(ENTER_BULK_ACTION)
    def enter_confirm_pick(self) -> bool: return self.dispatch(ENTER_CONFIRM_PICK)
    def enter_focus(self) -> bool: return self.dispatch(ENTER_FOCUS)
    def enter_fuzzy_picker(self) -> bool: return self.dispatch(ENTER_FUZZY_PICKER)
    def enter_edit_issue(self) -> bool: return self.dispatch(ENTER_EDIT_ISSUE)
    def enter_detail(self) -> bool: return self.dispatch(ENTER_DETAIL)
    def toggle_help(self) -> bool: return self.dispatch(TOGGLE_HELP)
    def exit_overlay(self) -> bool: return self.dispatch(EXIT_OVERLAY)
    def exit_to_normal(self) -> bool: return self.dispatch(EXIT_TO_NORMAL)
    def clear_multi_select(self) -> bool: return self.dispatch(CLEAR_MULTI_SELECT)


# -----------------------------
# Notifications
# -----------------------------
MAX_VISIBLE_NOTIFICATIONS = 3
AUTO_DISMISS_SECONDS = 3.0
PERSISTENT_KINDS = ("error", "loading")


@dataclass
class Notification:
    id: str
    kind: str  # info | success | error | loading
    message: str
    created_at: float
    retry: Optional[Callable[[], None]] = None


class LoadingHandle:
    def __init__(self, notifier: "Notifier", notification_id: str):
        self._notifier = notifier
        self.id = notification_id

    def resolve(self, message: str) -> None:
        self._notifier.dismiss(self.id)
        self._notifier.success(message)

    def reject(self, message: str, retry: Optional[Callable[[], None]] = None) -> None:
        self._notifier.dismiss(self.id)
        self._notifier.error(message, retry=retry)


class Notifier:
    """Short-lived messages under the board; errors and spinners stay until handled."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._counter = 0
        self.items: List[Notification] = []

    def info(self, message: str) -> str:
        return self._add("info", message)

    def success(self, message: str) -> str:
        return self._add("success", message)

    def error(self, message: str, retry: Optional[Callable[[], None]] = None) -> str:
        return self._add("error", message, retry)

    def loading(self, message: str) -> LoadingHandle:
        return LoadingHandle(self, self._add("loading", message))

    def _add(self, kind: str, message: str, retry: Optional[Callable[[], None]] = None) -> str:
        self._counter += 1
        nid = f"n{self._counter}"
        self.items.append(Notification(nid, kind, message, self._clock(), retry))
        while len(self.items) > MAX_VISIBLE_NOTIFICATIONS:
            victim = next((n for n in self.items if n.kind not in PERSISTENT_KINDS), self.items[0])
            self.items.remove(victim)
        return nid

    def dismiss(self, notification_id: str) -> None:
        self.items = [n for n in self.items if n.id != notification_id]

    def dismiss_all(self) -> None:
        self.items = []

    def expire(self, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        keep = [n for n in self.items
                if n.kind in PERSISTENT_KINDS or now - n.created_at < AUTO_DISMISS_SECONDS]
        changed = len(keep) != len(self.items)
        self.items = keep
        return changed

    def handle_error_action(self, action: str) -> bool:
        """'retry' or 'dismiss' applied to the oldest error."""
        target = next((n for n in self.items if n.kind == "error"), None)
        if target is None:
            return False
        if action == "retry" and target.retry is not None:
            self.dismiss(target.id)
            target.retry()
            return True
        if action == "dismiss":
            self.dismiss(target.id)
            return True
        return False


# -----------------------------
# Action log
# -----------------------------
PENDING = "pending"
SUCCESS = "success"
ERROR = "error"
ACTION_LOG_CAPACITY = 10
ACTION_LOG_VISIBLE = 5

UndoThunk = Callable[[], Awaitable[None]]
_UNSET = object()


@dataclass
class ActionLogEntry:
    id: str
    description: str
    status: str
    timestamp: float
    undo: Optional[UndoThunk] = None
    retry: Optional[Callable[[], None]] = None


class ActionLogStore:
    """Append-only sqlite history of finished actions (best effort)."""

    MAX_ROWS = 1000

    def __init__(self, path: str):
        self.path = path
        self.conn = sqlite3.connect(path)
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS action_log (
              seq INTEGER PRIMARY KEY AUTOINCREMENT,
              entry_id TEXT NOT NULL,
              description TEXT NOT NULL,
              status TEXT NOT NULL,
              timestamp REAL NOT NULL
            )
            """
        )
        self.conn.commit()

    def append(self, entry: ActionLogEntry) -> None:
        cur = self.conn.cursor()
        cur.execute(
            "INSERT INTO action_log(entry_id, description, status, timestamp) VALUES (?,?,?,?)",
            (entry.id, entry.description, entry.status, entry.timestamp),
        )
        cur.execute(
            "DELETE FROM action_log WHERE seq <= (SELECT MAX(seq) FROM action_log) - ?",
            (self.MAX_ROWS,),
        )
        self.conn.commit()

    def recent(self, limit: int = 50) -> List[Dict[str, object]]:
        cur = self.conn.cursor()
        cur.execute(
            "SELECT entry_id, description, status, timestamp FROM action_log ORDER BY seq DESC LIMIT ?",
            (limit,),
        )
        rows = [
            {"id": r[0], "description": r[1], "status": r[2], "timestamp": r[3]}
            for r in cur.fetchall()
        ]
        rows.reverse()
        return rows

    def close(self) -> None:
        self.conn.close()


class ActionLog:
    """Bounded in-memory history of user actions with one-shot undo."""

    def __init__(self, notifier: Notifier, refresh: Callable[[], Awaitable[object]],
                 store: Optional[ActionLogStore] = None, capacity: int = ACTION_LOG_CAPACITY,
                 clock: Callable[[], float] = time.time):
        self._notifier = notifier
        self._refresh = refresh
        self._store = store
        self._capacity = capacity
        self._clock = clock
        self._counter = 0
        self._entries: List[ActionLogEntry] = []

    @property
    def entries(self) -> List[ActionLogEntry]:
        return list(self._entries)

    def recent(self, limit: int = ACTION_LOG_VISIBLE) -> List[ActionLogEntry]:
        return self._entries[-limit:]

    @property
    def has_undoable(self) -> bool:
        return any(e.undo is not None for e in self._entries)

    def record(self, description: str, status: str = PENDING,
               undo: Optional[UndoThunk] = None,
               retry: Optional[Callable[[], None]] = None) -> ActionLogEntry:
        self._counter += 1
        entry = ActionLogEntry(f"a{self._counter}", description, status, self._clock(), undo, retry)
        self.push(entry)
        return entry

    def push(self, entry: ActionLogEntry) -> None:
        self._entries.append(entry)
        del self._entries[:-self._capacity]
        if entry.status != PENDING:
            self._persist(entry)

    def update(self, entry: ActionLogEntry, status: Optional[str] = None,
               description: Optional[str] = None, undo=_UNSET, retry=_UNSET) -> None:
        was_pending = entry.status == PENDING
        if status is not None:
            entry.status = status
        if description is not None:
            entry.description = description
        if undo is not _UNSET:
            entry.undo = undo
        if retry is not _UNSET:
            entry.retry = retry
        if was_pending and entry.status != PENDING:
            self._persist(entry)

    def _persist(self, entry: ActionLogEntry) -> None:
        if self._store is None:
            return
        try:
            self._store.append(entry)
        except Exception:
            log.debug("Action log persistence failed", exc_info=True)

    async def undo_last(self) -> bool:
        target = next((e for e in reversed(self._entries) if e.undo is not None), None)
        if target is None:
            self._notifier.info("Nothing to undo")
            return False
        thunk = target.undo
        target.undo = None
        handle = self._notifier.loading(f"Undoing: {target.description}")
        try:
            await thunk()
        except Exception as exc:
            log.warning("Undo of %r failed: %s", target.description, exc)
            handle.reject(f"Undo failed: {exc}")
            self.record(f"Undo {target.description}", status=ERROR)
            await self._refresh()
            return False
        handle.resolve(f"Undone: {target.description}")
        self.record(f"Undo {target.description}", status=SUCCESS)
        return True


# -----------------------------
# Data store
# -----------------------------
MAX_REFRESH_FAILURES = 3
PENDING_MUTATION_TTL = 90.0
FRESH_SECONDS = 60
AGING_SECONDS = 300


@dataclass
class PendingMutation:
    expires_at: float
    project_status: Optional[str] = None
    assignees: Optional[List[str]] = None
    labels: Optional[List[str]] = None

    def apply(self, issue: Issue) -> Issue:
        changes = {}
        if self.project_status is not None:
            changes["project_status"] = self.project_status
        if self.assignees is not None:
            changes["assignees"] = list(self.assignees)
        if self.labels is not None:
            changes["labels"] = list(self.labels)
        return dataclasses.replace(issue, **changes) if changes else issue


PENDING_FIELDS = ("project_status", "assignees", "labels")


def apply_pending_mutations(data: DashboardData, pending: Dict[str, PendingMutation],
                            now: float) -> DashboardData:
    """Overlay unexpired local writes on freshly fetched data; drops expired ones."""
    for key in [k for k, m in pending.items() if m.expires_at <= now]:
        del pending[key]
    if not pending:
        return data
    repos = []
    for rd in data.repos:
        changed = False
        issues = []
        for issue in rd.issues:
            mutation = pending.get(issue_nav_id(rd.repo.name, issue.number))
            if mutation is not None:
                issue = mutation.apply(issue)
                changed = True
            issues.append(issue)
        repos.append(dataclasses.replace(rd, issues=issues) if changed else rd)
    return dataclasses.replace(data, repos=repos)


def refresh_age_color(last_refresh: Optional[dt.datetime], now: Optional[dt.datetime] = None) -> str:
    if last_refresh is None:
        return "stale"
    now = now or dt.datetime.now()
    age = (now - last_refresh).total_seconds()
    if age < FRESH_SECONDS:
        return "fresh"
    if age < AGING_SECONDS:
        return "aging"
    return "stale"


class DataProvider:
    async def fetch(self) -> DashboardData:
        raise NotImplementedError


class DataStore:
    """Current dashboard data plus refresh bookkeeping.

    Only one refresh runs at a time; a refresh requested while another is in
    flight is skipped. Local writes registered as pending mutations are
    re-applied on top of every fetch until they expire.
    """

    def __init__(self, provider: DataProvider, clock: Callable[[], float] = time.monotonic):
        self.provider = provider
        self._clock = clock
        self.data: Optional[DashboardData] = None
        self.status = "loading"  # loading | success | error
        self.error: Optional[str] = None
        self.last_refresh: Optional[dt.datetime] = None
        self.is_refreshing = False
        self.consecutive_failures = 0
        self.auto_refresh_paused = False
        self._pending: Dict[str, PendingMutation] = {}
        self._listeners: List[Callable[[], None]] = []
        self._stopped = False

    def subscribe(self, callback: Callable[[], None]) -> None:
        self._listeners.append(callback)

    def _emit(self) -> None:
        for cb in list(self._listeners):
            cb()

    async def refresh(self, silent: bool = False) -> bool:
        if self.is_refreshing:
            log.debug("Refresh skipped: another one is in flight")
            return False
        self.is_refreshing = True
        if not silent:
            self._emit()
        try:
            fresh = await self.provider.fetch()
        except Exception as exc:
            self._record_failure(exc)
            return False
        else:
            self._record_success(fresh)
            return True
        finally:
            self.is_refreshing = False
            self._emit()

    def _record_success(self, fresh: DashboardData) -> None:
        self.data = apply_pending_mutations(fresh, self._pending, self._clock())
        self.status = "success"
        self.error = None
        self.last_refresh = dt.datetime.now()
        self.consecutive_failures = 0
        self.auto_refresh_paused = False
        failed = [rd.repo.name for rd in fresh.repos if rd.error]
        if failed:
            log.warning("Refresh succeeded with failing repos: %s", ", ".join(failed))
        else:
            log.info("Refreshed %d repos", len(fresh.repos))

    def _record_failure(self, exc: Exception) -> None:
        self.consecutive_failures += 1
        self.error = str(exc) or exc.__class__.__name__
        self.status = "success" if self.data is not None else "error"
        if self.consecutive_failures >= MAX_REFRESH_FAILURES and not self.auto_refresh_paused:
            self.auto_refresh_paused = True
            log.error("Auto-refresh paused after %d failures: %s", self.consecutive_failures, exc)
        else:
            log.warning("Refresh failed (%d in a row): %s", self.consecutive_failures, exc)

    def mutate_data(self, fn: Callable[[DashboardData], DashboardData]) -> None:
        if self.data is None:
            return
        self.data = fn(self.data)
        self._emit()

    def register_pending_mutation(self, key: str, ttl: float = PENDING_MUTATION_TTL, **fields) -> None:
        unknown = set(fields) - set(PENDING_FIELDS)
        if unknown:
            raise TypeError(f"Unknown pending mutation fields: {sorted(unknown)}")
        current = self._pending.get(key)
        merged = {f: getattr(current, f) for f in PENDING_FIELDS} if current else {}
        merged.update(fields)
        self._pending[key] = PendingMutation(expires_at=self._clock() + ttl, **merged)

    def clear_pending_mutation(self, key: str, fields: Optional[Iterable[str]] = None) -> None:
        current = self._pending.get(key)
        if current is None:
            return
        if fields is None:
            del self._pending[key]
            return
        for f in fields:
            setattr(current, f, None)
        if all(getattr(current, f) is None for f in PENDING_FIELDS):
            del self._pending[key]

    def pending_mutation(self, key: str) -> Optional[PendingMutation]:
        return self._pending.get(key)

    def resume_auto_refresh(self) -> None:
        self.consecutive_failures = 0
        self.auto_refresh_paused = False
        self._emit()

    def stop(self) -> None:
        self._stopped = True

    async def run_auto_refresh(self, interval: float) -> None:
        if interval <= 0:
            return
        while not self._stopped:
            await asyncio.sleep(interval)
            if self._stopped:
                break
            if self.auto_refresh_paused:
                continue
            await self.refresh(silent=True)


# -----------------------------
# Detail cache
# -----------------------------
NOT_FETCHED = "not_fetched"
LOADING = "loading"


@dataclass(frozen=True)
class Loaded:
    value: object


@dataclass(frozen=True)
class Failed:
    error: str


class _FetchToken:
    def __init__(self) -> None:
        self.canceled = False


class DetailCache:
    """Lazily loaded per-item details (issue comments).

    Loads that were superseded by a selection change are discarded.
    """

    def __init__(self, loader: Callable[[str], Awaitable[object]]):
        self._loader = loader
        self._entries: Dict[str, object] = {}
        self._tokens: Dict[str, _FetchToken] = {}

    def get(self, key: str) -> object:
        return self._entries.get(key, NOT_FETCHED)

    async def ensure_loaded(self, key: str) -> object:
        state = self.get(key)
        if state is not NOT_FETCHED and not isinstance(state, Failed):
            return state
        token = _FetchToken()
        self._tokens[key] = token
        self._entries[key] = LOADING
        try:
            value = await self._loader(key)
        except Exception as exc:
            if not token.canceled:
                log.warning("Loading details for %s failed: %s", key, exc)
                self._entries[key] = Failed(str(exc))
        else:
            if not token.canceled:
                self._entries[key] = Loaded(value)
        finally:
            if self._tokens.get(key) is token:
                del self._tokens[key]
        return self.get(key)

    def focus(self, key: Optional[str]) -> None:
        for other, token in list(self._tokens.items()):
            if other == key:
                continue
            token.canceled = True
            del self._tokens[other]
            self._entries.pop(other, None)

    def invalidate(self, key: str) -> None:
        token = self._tokens.pop(key, None)
        if token is not None:
            token.canceled = True
        self._entries.pop(key, None)


# -----------------------------
# GitHub API
# -----------------------------
API_ROOT = "https://api.github.com"
GRAPHQL_URL = f"{API_ROOT}/graphql"

GQL_REPO_ISSUES = """query($owner:String!, $name:String!, $after:String){
  repository(owner:$owner, name:$name){
    issues(states:OPEN, first:100, after:$after, orderBy:{field:UPDATED_AT, direction:DESC}){
      pageInfo{ hasNextPage endCursor }
      nodes{
        number title url state updatedAt body
        labels(first:20){ nodes{ name } }
        assignees(first:10){ nodes{ login } }
        projectItems(first:10){
          nodes{
            id
            project{ id number }
            fieldValueByName(name:"Status"){
              ... on ProjectV2ItemFieldSingleSelectValue{ name optionId }
            }
          }
        }
      }
    }
  }
}
"""

GQL_ISSUE_PROJECT_ITEMS = """query($owner:String!, $name:String!, $number:Int!){
  repository(owner:$owner, name:$name){
    issue(number:$number){
      projectItems(first:20){ nodes{ id project{ id number } } }
    }
  }
}
"""

GQL_FIELD_OPTIONS = """query($id:ID!){
  node(id:$id){
    ... on ProjectV2SingleSelectField{
      name
      options { id name }
    }
  }
}
"""

GQL_MUTATION_SET_STATUS = """mutation($projectId:ID!, $itemId:ID!, $fieldId:ID!, $optionId:String!) {
  updateProjectV2ItemFieldValue(
    input:{
      projectId:$projectId,
      itemId:$itemId,
      fieldId:$fieldId,
      value:{singleSelectOptionId:$optionId}
    }
  ){
    projectV2Item{ id }
  }
}
"""


def _session(token: str) -> requests.Session:
    s = requests.Session()
    s.headers["Authorization"] = f"Bearer {token}"
    s.headers["Accept"] = "application/vnd.github+json"
    return s


def _split_repo(full_name: str) -> Tuple[str, str]:
    owner, _, name = full_name.partition("/")
    if not owner or not name:
        raise ValueError(f"Repository must be owner/name, got {full_name!r}")
    return owner, name


def _graphql_raw(session: requests.Session, query: str, variables: Dict[str, object]) -> Dict:
    try:
        r = session.post(GRAPHQL_URL, json={"query": query, "variables": variables}, timeout=60)
        r.raise_for_status()
        return r.json()
    except Exception:
        log.exception("GraphQL request failed")
        raise


def _retry_sleep(seconds: float, on_wait: Optional[Callable[[str], None]] = None) -> None:
    msg = f"Rate limited; waiting {int(seconds)}s…"
    if on_wait:
        on_wait(msg)
    else:
        log.info(msg)
    time.sleep(seconds)


def _parse_retry_after_seconds(resp: Optional[requests.Response]) -> Optional[int]:
    if resp is None or resp.headers is None:
        return None
    ra = resp.headers.get('Retry-After')
    if ra:
        try:
            return int(float(ra))
        except ValueError:
            pass
    xrlr = resp.headers.get('X-RateLimit-Reset')
    if xrlr:
        try:
            return max(1, int(xrlr) - int(time.time()))
        except ValueError:
            pass
    return None


def _graphql_with_backoff(
    session: requests.Session,
    query: str,
    variables: Dict[str, object],
    on_wait: Optional[Callable[[str], None]] = None,
    max_total_wait: int = 300,
) -> Dict:
    """Call GraphQL with handling for rate limits and transient failures.

    - Retries RATE_LIMITED GraphQL errors with exponential backoff.
    - Retries HTTP 403/429/502/503/504 with Retry-After or exponential backoff.
    - Retries timeouts and connection errors.
    """
    backoff = 10
    total_wait = 0
    while True:
        try:
            resp = _graphql_raw(session, query, variables)
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status in (403, 429, 502, 503, 504):
                wait_s = _parse_retry_after_seconds(e.response)
                if wait_s is None:
                    wait_s = min(300, backoff)
                    backoff = min(300, backoff * 2)
                if total_wait + wait_s > max_total_wait:
                    raise
                _retry_sleep(wait_s, on_wait)
                total_wait += wait_s
                continue
            raise
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError):
            wait_s = min(60, backoff)
            backoff = min(300, backoff * 2)
            if total_wait + wait_s > max_total_wait:
                raise
            _retry_sleep(wait_s, on_wait)
            total_wait += wait_s
            continue

        errs = resp.get("errors") or []
        if errs and any(e.get("type") == "RATE_LIMITED" for e in errs):
            wait_s = min(300, backoff)
            backoff = min(300, backoff * 2)
            if total_wait + wait_s > max_total_wait:
                return resp
            _retry_sleep(wait_s, on_wait)
            total_wait += wait_s
            continue
        return resp


def _raise_graphql_errors(resp: Dict, what: str) -> None:
    errs = resp.get("errors") or []
    if errs:
        raise RuntimeError(f"{what} failed: " + "; ".join(e.get("message", str(e)) for e in errs))


def _parse_issue_node(node: Dict, project_number: int) -> Issue:
    labels = [l.get("name") for l in ((node.get("labels") or {}).get("nodes") or []) if l and l.get("name")]
    assignees = [a.get("login") for a in ((node.get("assignees") or {}).get("nodes") or []) if a and a.get("login")]
    status = None
    for item in ((node.get("projectItems") or {}).get("nodes") or []):
        if not item or ((item.get("project") or {}).get("number")) != project_number:
            continue
        value = item.get("fieldValueByName") or {}
        status = value.get("name") or None
        break
    return Issue(
        number=int(node.get("number") or 0),
        title=node.get("title") or "",
        url=node.get("url") or "",
        state=node.get("state") or "OPEN",
        updated_at=node.get("updatedAt") or "",
        labels=labels,
        assignees=assignees,
        project_status=status,
        body=node.get("body") or "",
    )


ACTIVITY_WINDOW = dt.timedelta(hours=24)
MAX_ACTIVITY_EVENTS = 15
COMMENT_PREVIEW_CHARS = 60
ISSUE_EVENT_TYPES = {"opened": "opened", "closed": "closed", "assigned": "assigned", "labeled": "labeled"}


def _parse_activity_event(item: object, short_name: str) -> Optional[ActivityEvent]:
    """Map one /repos/{repo}/events entry; None for event kinds the board ignores."""
    if not isinstance(item, dict):
        return None
    payload = item.get("payload") or {}
    target = payload.get("issue") or payload.get("pull_request") or {}
    number = target.get("number")
    raw_ts = item.get("created_at") or ""
    if not number or not raw_ts:
        return None
    try:
        timestamp = dt.datetime.fromisoformat(raw_ts.replace("Z", "+00:00"))
    except ValueError:
        return None
    kind = item.get("type")
    if kind == "IssueCommentEvent":
        event_type = "commented"
        body = ((payload.get("comment") or {}).get("body") or "").replace("\n", " ")
        summary = f"commented on #{number}"
        if body:
            more = "..." if len(body) > COMMENT_PREVIEW_CHARS else ""
            summary += f': "{body[:COMMENT_PREVIEW_CHARS]}{more}"'
    elif kind == "IssuesEvent" and payload.get("action") in ISSUE_EVENT_TYPES:
        event_type = ISSUE_EVENT_TYPES[payload["action"]]
        summary = f"{event_type} #{number}"
        if event_type == "opened":
            summary += f": {target.get('title') or ''}"
    else:
        return None
    return ActivityEvent(
        type=event_type,
        repo_short_name=short_name,
        issue_number=int(number),
        actor=(item.get("actor") or {}).get("login") or "",
        summary=summary,
        timestamp=timestamp,
    )


class GitHubClient:
    """Blocking GitHub REST + GraphQL calls (run them off the event loop)."""

    def __init__(self, token: str, session: Optional[requests.Session] = None):
        if not token:
            raise RuntimeError("GITHUB_TOKEN is required (set it in the environment or .env)")
        self.session = session or _session(token)
        self._options_cache: Dict[str, List[StatusOption]] = {}

    # REST
    def _rest(self, method: str, path: str, payload: Optional[Dict] = None) -> requests.Response:
        r = self.session.request(method, f"{API_ROOT}{path}", json=payload, timeout=30)
        if r.status_code >= 300:
            raise RuntimeError(f"{method} {path} failed ({r.status_code}): {r.text[:200]}")
        return r

    def add_assignees(self, repo: str, number: int, logins: List[str]) -> None:
        self._rest("POST", f"/repos/{repo}/issues/{number}/assignees", {"assignees": logins})

    def remove_assignees(self, repo: str, number: int, logins: List[str]) -> None:
        self._rest("DELETE", f"/repos/{repo}/issues/{number}/assignees", {"assignees": logins})

    def add_labels(self, repo: str, number: int, labels: List[str]) -> None:
        self._rest("POST", f"/repos/{repo}/issues/{number}/labels", {"labels": labels})

    def remove_label(self, repo: str, number: int, label: str) -> None:
        quoted = requests.utils.quote(label, safe="")
        self._rest("DELETE", f"/repos/{repo}/issues/{number}/labels/{quoted}")

    def add_comment(self, repo: str, number: int, body: str) -> None:
        self._rest("POST", f"/repos/{repo}/issues/{number}/comments", {"body": body})

    def create_issue(self, repo: str, title: str, body: str = "", labels: Optional[List[str]] = None) -> int:
        payload: Dict[str, object] = {"title": title, "body": body}
        if labels:
            payload["labels"] = labels
        data = self._rest("POST", f"/repos/{repo}/issues", payload).json() or {}
        number = data.get("number")
        if not number:
            raise RuntimeError("Create issue returned no issue number")
        return int(number)

    def set_issue_state(self, repo: str, number: int, state: str) -> None:
        self._rest("PATCH", f"/repos/{repo}/issues/{number}", {"state": state})

    def list_comments(self, repo: str, number: int) -> List[IssueComment]:
        data = self._rest("GET", f"/repos/{repo}/issues/{number}/comments?per_page=100").json() or []
        out = []
        for item in data:
            if not isinstance(item, dict):
                continue
            out.append(IssueComment(
                author=((item.get("user") or {}).get("login")) or "",
                body=item.get("body") or "",
                created_at=item.get("created_at") or "",
            ))
        return out

    def recent_activity(self, repo: RepoConfig, since: dt.datetime) -> List[ActivityEvent]:
        data = self._rest("GET", f"/repos/{repo.name}/events?per_page=100").json() or []
        if not isinstance(data, list):
            return []
        out = []
        for item in data:
            event = _parse_activity_event(item, repo.short_name)
            if event is not None and event.timestamp >= since:
                out.append(event)
        return out[:MAX_ACTIVITY_EVENTS]

    # GraphQL
    def fetch_repo_issues(self, repo: RepoConfig) -> List[Issue]:
        owner, name = _split_repo(repo.name)
        issues: List[Issue] = []
        after = None
        while True:
            resp = _graphql_with_backoff(self.session, GQL_REPO_ISSUES, {"owner": owner, "name": name, "after": after})
            _raise_graphql_errors(resp, f"Fetch issues for {repo.name}")
            conn = (((resp.get("data") or {}).get("repository") or {}).get("issues")) or {}
            for node in conn.get("nodes") or []:
                if node:
                    issues.append(_parse_issue_node(node, repo.project_number))
            page = conn.get("pageInfo") or {}
            if not page.get("hasNextPage"):
                return issues
            after = page.get("endCursor")

    def status_options(self, field_id: str) -> List[StatusOption]:
        if field_id in self._options_cache:
            return list(self._options_cache[field_id])
        resp = _graphql_with_backoff(self.session, GQL_FIELD_OPTIONS, {"id": field_id})
        _raise_graphql_errors(resp, "Fetch status options")
        node = (resp.get("data") or {}).get("node") or {}
        out = []
        for opt in node.get("options") or []:
            if not isinstance(opt, dict):
                continue
            opt_id = (opt.get("id") or "").strip()
            opt_name = (opt.get("name") or "").strip()
            if opt_id and opt_name:
                out.append(StatusOption(opt_id, opt_name))
        self._options_cache[field_id] = out
        return list(out)

    def project_item(self, repo: str, number: int, project_number: int) -> Tuple[str, str]:
        owner, name = _split_repo(repo)
        resp = _graphql_with_backoff(self.session, GQL_ISSUE_PROJECT_ITEMS,
                                     {"owner": owner, "name": name, "number": number})
        _raise_graphql_errors(resp, f"Look up project item for {repo}#{number}")
        issue = ((resp.get("data") or {}).get("repository") or {}).get("issue") or {}
        for item in ((issue.get("projectItems") or {}).get("nodes") or []):
            project = (item or {}).get("project") or {}
            if project.get("number") == project_number:
                return project.get("id") or "", item.get("id") or ""
        raise RuntimeError(f"{repo}#{number} is not in project {project_number}")

    def set_project_status(self, project_id: str, item_id: str, field_id: str, option_id: str) -> None:
        if not (project_id and item_id and field_id and option_id):
            raise RuntimeError("Status update missing required identifiers")
        variables = {"projectId": project_id, "itemId": item_id, "fieldId": field_id, "optionId": option_id}
        resp = _graphql_with_backoff(self.session, GQL_MUTATION_SET_STATUS, variables)
        _raise_graphql_errors(resp, "Status update")


class GitHubDataProvider(DataProvider):
    def __init__(self, client: GitHubClient, config: Config):
        self.client = client
        self.config = config

    def _fetch_repo(self, repo: RepoConfig) -> RepoData:
        try:
            options = self.client.status_options(repo.status_field_id)
            issues = self.client.fetch_repo_issues(repo)
        except Exception as exc:
            log.exception("Fetching %s failed", repo.name)
            return RepoData(repo=repo, error=str(exc) or exc.__class__.__name__)
        return RepoData(repo=repo, issues=issues, status_options=options)

    def _fetch_activity(self, repo: RepoConfig, since: dt.datetime) -> List[ActivityEvent]:
        try:
            return self.client.recent_activity(repo, since)
        except Exception as exc:
            log.warning("Fetching activity for %s failed: %s", repo.name, exc)
            return []

    async def fetch(self) -> DashboardData:
        loop = asyncio.get_running_loop()
        jobs = [loop.run_in_executor(None, self._fetch_repo, repo) for repo in self.config.repos]
        since = dt.datetime.now(dt.timezone.utc) - ACTIVITY_WINDOW
        feeds = [loop.run_in_executor(None, self._fetch_activity, repo, since) for repo in self.config.repos]
        repos = list(await asyncio.gather(*jobs))
        if repos and all(rd.error for rd in repos):
            raise RuntimeError(repos[0].error)
        activity = [event for feed in await asyncio.gather(*feeds) for event in feed]
        activity.sort(key=lambda e: e.timestamp, reverse=True)
        return DashboardData(repos=repos, activity=activity[:MAX_ACTIVITY_EVENTS], fetched_at=dt.datetime.now())


class MutationProvider:
    """Remote writes. Each call returns an optional warning or raises."""

    async def assign(self, repo: str, number: int, login: str) -> Optional[str]:
        raise NotImplementedError

    async def unassign(self, repo: str, number: int, login: str) -> Optional[str]:
        raise NotImplementedError

    async def update_status(self, repo: RepoConfig, number: int, option_id: str) -> Optional[str]:
        raise NotImplementedError

    async def add_label(self, repo: str, number: int, label: str) -> Optional[str]:
        raise NotImplementedError

    async def remove_label(self, repo: str, number: int, label: str) -> Optional[str]:
        raise NotImplementedError

    async def add_comment(self, repo: str, number: int, body: str) -> Optional[str]:
        raise NotImplementedError

    async def create_issue(self, repo: str, title: str, body: str = "",
                           labels: Optional[List[str]] = None) -> int:
        raise NotImplementedError

    async def close_issue(self, repo: str, number: int) -> Optional[str]:
        raise NotImplementedError

    async def reopen_issue(self, repo: str, number: int) -> Optional[str]:
        raise NotImplementedError

    async def fetch_comments(self, repo: str, number: int) -> List[IssueComment]:
        raise NotImplementedError


class GitHubMutationProvider(MutationProvider):
    def __init__(self, client: GitHubClient):
        self.client = client

    async def _run(self, fn: Callable, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    async def assign(self, repo, number, login):
        await self._run(self.client.add_assignees, repo, number, [login])
        return None

    async def unassign(self, repo, number, login):
        await self._run(self.client.remove_assignees, repo, number, [login])
        return None

    async def update_status(self, repo, number, option_id):
        def _update():
            project_id, item_id = self.client.project_item(repo.name, number, repo.project_number)
            self.client.set_project_status(project_id, item_id, repo.status_field_id, option_id)
        await self._run(_update)
        return None

    async def add_label(self, repo, number, label):
        await self._run(self.client.add_labels, repo, number, [label])
        return None

    async def remove_label(self, repo, number, label):
        await self._run(self.client.remove_label, repo, number, label)
        return None

    async def add_comment(self, repo, number, body):
        await self._run(self.client.add_comment, repo, number, body)
        return None

    async def create_issue(self, repo, title, body="", labels=None):
        return await self._run(self.client.create_issue, repo, title, body, list(labels or []))

    async def close_issue(self, repo, number):
        await self._run(self.client.set_issue_state, repo, number, "closed")
        return None

    async def reopen_issue(self, repo, number):
        await self._run(self.client.set_issue_state, repo, number, "open")
        return None

    async def fetch_comments(self, repo, number):
        return await self._run(self.client.list_comments, repo, number)


# -----------------------------
# Mock data (MOCK_FETCH=1 / --mock)
# -----------------------------
MOCK_STATUSES = ["Todo", "In Progress", "In Review", "Done"]
MOCK_TITLES = [
    "Fix flaky login test",
    "Add pagination to search results",
    "Upgrade CI runners",
    "Document the release process",
    "Crash when config file is empty",
    "Speed up cold start",
    "Retry webhooks on 5xx",
]
MOCK_PRIORITIES = ["priority:high", "priority:low", None, "priority:critical", "priority:medium", None, None]


def generate_mock_data(config: Config, base: Optional[dt.datetime] = None) -> DashboardData:
    """Deterministic board content for offline runs."""
    base = base or dt.datetime(2024, 1, 1, 9, 0, 0)
    repos: List[RepoData] = []
    activity: List[ActivityEvent] = []
    for r_idx, repo in enumerate(config.repos):
        options = [StatusOption(f"{repo.short_name}-opt-{i}", name) for i, name in enumerate(MOCK_STATUSES)]
        issues: List[Issue] = []
        for i, title in enumerate(MOCK_TITLES):
            number = 100 * (r_idx + 1) + i + 1
            prio = MOCK_PRIORITIES[i % len(MOCK_PRIORITIES)]
            status = None if i % 4 == 3 else MOCK_STATUSES[i % 3]
            issues.append(Issue(
                number=number,
                title=title,
                url=f"https://github.com/{repo.name}/issues/{number}",
                updated_at=(base + dt.timedelta(hours=i)).isoformat(),
                labels=[prio] if prio else [],
                assignees=[config.board.assignee] if i % 3 == 0 else [],
                project_status=status,
            ))
        repos.append(RepoData(repo=repo, issues=issues, status_options=options))
        for i, issue in enumerate(issues[:2]):
            activity.append(ActivityEvent(
                type="commented" if i else "opened",
                repo_short_name=repo.short_name,
                issue_number=issue.number,
                actor="octocat",
                summary=f"commented on #{issue.number}" if i else f"opened #{issue.number}: {issue.title}",
                timestamp=base + dt.timedelta(hours=r_idx * 2 + i),
            ))
    tasks: List[Task] = []
    if config.ticktick_enabled:
        tasks = [
            Task(id="t1", title="Review quarterly goals", priority=3),
            Task(id="t2", title="Book dentist", priority=1),
        ]
    return DashboardData(repos=repos, activity=activity, tasks=tasks)


class MockDataProvider(DataProvider):
    """Serves generated data; MockMutationProvider writes land here."""

    def __init__(self, config: Config):
        self.state = generate_mock_data(config)

    async def fetch(self) -> DashboardData:
        return dataclasses.replace(self.state, fetched_at=dt.datetime.now())


class MockMutationProvider(MutationProvider):
    def __init__(self, data_provider: MockDataProvider):
        self.data_provider = data_provider

    def _issue(self, repo: str, number: int) -> Issue:
        for rd in self.data_provider.state.repos:
            if rd.repo.name != repo:
                continue
            for issue in rd.issues:
                if issue.number == number:
                    return issue
        raise RuntimeError(f"{repo}#{number} not found")

    def _patch(self, repo: str, number: int, fn: Callable[[Issue], Issue]) -> None:
        self._issue(repo, number)
        self.data_provider.state = patch_issue(self.data_provider.state, repo, number, fn)

    async def assign(self, repo, number, login):
        current = self._issue(repo, number).assignees
        self._patch(repo, number, _with_assignees(current + [login] if login not in current else current))
        return None

    async def unassign(self, repo, number, login):
        current = self._issue(repo, number).assignees
        self._patch(repo, number, _with_assignees([a for a in current if a != login]))
        return None

    async def update_status(self, repo, number, option_id):
        for rd in self.data_provider.state.repos:
            if rd.repo.name == repo.name:
                option = find_status_option(rd.status_options, option_id=option_id)
                if option is None:
                    raise RuntimeError(f"Unknown status option {option_id}")
                self._patch(repo.name, number, _with_status(option.name))
                return None
        raise RuntimeError(f"Unknown repo {repo.name}")

    async def add_label(self, repo, number, label):
        current = self._issue(repo, number).labels
        if label not in current:
            self._patch(repo, number, _with_labels(current + [label]))
        return None

    async def remove_label(self, repo, number, label):
        current = self._issue(repo, number).labels
        self._patch(repo, number, _with_labels([l for l in current if l != label]))
        return None

    async def add_comment(self, repo, number, body):
        self._issue(repo, number)
        return None

    async def create_issue(self, repo, title, body="", labels=None):
        numbers = [i.number for rd in self.data_provider.state.repos if rd.repo.name == repo for i in rd.issues]
        number = max(numbers or [0]) + 1
        issue = Issue(number=number, title=title, body=body, labels=list(labels or []))
        self.data_provider.state = insert_issue(self.data_provider.state, repo, issue)
        return number

    async def close_issue(self, repo, number):
        self._issue(repo, number)
        self.data_provider.state = remove_issue(self.data_provider.state, repo, number)
        return None

    async def reopen_issue(self, repo, number):
        return "closed issues are not kept in mock data"

    async def fetch_comments(self, repo, number):
        issue = self._issue(repo, number)
        return [IssueComment(author="octocat", body=f"Looking into {issue.title.lower()}.")]


# -----------------------------
# Mutations
# -----------------------------
@dataclass
class IssueContext:
    nav_id: str
    issue: Issue
    repo: RepoConfig
    status_options: List[StatusOption]


def find_issue_context(data: Optional[DashboardData], nav_id: Optional[str]) -> Optional[IssueContext]:
    parsed = parse_issue_nav_id(nav_id)
    if data is None or parsed is None:
        return None
    repo_name, number = parsed
    for rd in data.repos:
        if rd.repo.name != repo_name:
            continue
        for issue in rd.issues:
            if issue.number == number:
                return IssueContext(nav_id, issue, rd.repo, list(rd.status_options))
    return None


def find_status_option(options: List[StatusOption], option_id: Optional[str] = None,
                       name: Optional[str] = None) -> Optional[StatusOption]:
    for opt in options:
        if option_id is not None and opt.id == option_id:
            return opt
        if name is not None and _norm(opt.name) == _norm(name):
            return opt
    return None


UndoStep = Callable[[], Awaitable[None]]


class Actions:
    """Optimistic writes against the selected issue or a multi-selection.

    The local patch lands before the first await. Success keeps it and never
    refetches; failure refetches exactly once so the server state wins.
    """

    def __init__(self, config: Config, store: DataStore, provider: MutationProvider,
                 notifier: Notifier, action_log: ActionLog,
                 selected_id: Callable[[], Optional[str]]):
        self.config = config
        self.store = store
        self.provider = provider
        self.notifier = notifier
        self.action_log = action_log
        self._selected_id = selected_id

    def _context(self, nav_id: Optional[str]) -> Optional[IssueContext]:
        return find_issue_context(self.store.data, nav_id if nav_id is not None else self._selected_id())

    def _retry(self, factory: Callable[[], Awaitable[object]]) -> Callable[[], None]:
        def retry() -> None:
            asyncio.ensure_future(factory())
        return retry

    async def _apply(self, ctx: IssueContext, call: Callable[[], Awaitable[Optional[str]]],
                     patch: Optional[Callable[[Issue], Issue]] = None,
                     pending: Optional[Dict[str, object]] = None) -> Optional[str]:
        if pending:
            self.store.register_pending_mutation(ctx.nav_id, **pending)
        if patch is not None:
            self.store.mutate_data(lambda data: patch_issue(data, ctx.repo.name, ctx.issue.number, patch))
        try:
            return await call()
        except Exception:
            if pending:
                self.store.clear_pending_mutation(ctx.nav_id, list(pending))
            raise

    async def _single(self, ctx: IssueContext, description: str,
                      call: Callable[[], Awaitable[Optional[str]]],
                      patch: Optional[Callable[[Issue], Issue]] = None,
                      pending: Optional[Dict[str, object]] = None,
                      undo: Optional[UndoStep] = None,
                      retry: Optional[Callable[[], None]] = None) -> bool:
        entry = self.action_log.record(description)
        handle = self.notifier.loading(f"{description}…")
        try:
            warning = await self._apply(ctx, call, patch, pending)
        except Exception as exc:
            log.warning("%s failed: %s", description, exc)
            handle.reject(f"{description} failed: {exc}", retry=retry)
            self.action_log.update(entry, status=ERROR, retry=retry)
            await self.store.refresh()
            return False
        handle.resolve(f"{description} ({warning})" if warning else description)
        self.action_log.update(entry, status=SUCCESS, undo=undo)
        return True

    async def _bulk(self, ids: Iterable[str], verb: str,
                    apply_one: Callable[[IssueContext], Awaitable[Optional[UndoStep]]]) -> List[str]:
        ids = list(ids)
        noun = f"{len(ids)} issue{'' if len(ids) == 1 else 's'}"
        entry = self.action_log.record(f"{verb} {noun}")
        handle = self.notifier.loading(f"{verb} {noun}…")
        failed: List[str] = []
        undo_steps: List[UndoStep] = []
        for nav_id in ids:
            ctx = self._context(nav_id)
            if ctx is None:
                failed.append(nav_id)
                continue
            try:
                step = await apply_one(ctx)
            except Exception as exc:
                log.warning("%s %s failed: %s", verb, nav_id, exc)
                failed.append(nav_id)
                continue
            if step is not None:
                undo_steps.append(step)

        undo = None
        if undo_steps:
            async def undo() -> None:
                for step in undo_steps:
                    await step()

        if failed:
            done = len(ids) - len(failed)
            handle.reject(f"{verb}: {done} done, {len(failed)} failed")
            self.action_log.update(entry, status=ERROR,
                                   description=f"{verb} {done} of {len(ids)}", undo=undo)
            await self.store.refresh()
        else:
            handle.resolve(f"{verb} {noun}")
            self.action_log.update(entry, status=SUCCESS, undo=undo)
        return failed

    # completion side effects of terminal statuses
    async def _run_completion(self, ctx: IssueContext, option: StatusOption) -> Optional[str]:
        action = ctx.repo.completion_action
        if action is None or not is_terminal_status(option.name):
            return None
        number = ctx.issue.number
        try:
            if action.type == "close_issue":
                await self.provider.close_issue(ctx.repo.name, number)
            elif action.type == "add_label":
                await self.provider.add_label(ctx.repo.name, number, action.label)
            elif action.type == "update_project_status" and action.option_id != option.id:
                await self.provider.update_status(ctx.repo, number, action.option_id)
        except Exception as exc:
            log.warning("Completion action %s on %s failed: %s", action.type, ctx.nav_id, exc)
            return f"{action.type} failed"
        return action.type

    async def _revert_completion(self, ctx: IssueContext, option: StatusOption) -> None:
        action = ctx.repo.completion_action
        if action is None or not is_terminal_status(option.name):
            return
        if action.type == "close_issue":
            await self.provider.reopen_issue(ctx.repo.name, ctx.issue.number)
        elif action.type == "add_label":
            await self.provider.remove_label(ctx.repo.name, ctx.issue.number, action.label)

    def _status_undo(self, ctx: IssueContext, previous: Optional[StatusOption],
                     applied: StatusOption) -> Optional[UndoStep]:
        if previous is None:
            return None

        async def call() -> Optional[str]:
            await self.provider.update_status(ctx.repo, ctx.issue.number, previous.id)
            await self._revert_completion(ctx, applied)
            return None

        async def undo() -> None:
            await self._apply(ctx, call, _with_status(previous.name), {"project_status": previous.name})
        return undo

    # single-item operations
    async def handle_status_change(self, option_id: str, nav_id: Optional[str] = None) -> bool:
        ctx = self._context(nav_id)
        if ctx is None:
            return False
        option = find_status_option(ctx.status_options, option_id=option_id)
        if option is None:
            return False
        if ctx.issue.project_status and _norm(ctx.issue.project_status) == _norm(option.name):
            self.notifier.info(f"Already {option.name}")
            return False
        previous = find_status_option(ctx.status_options, name=ctx.issue.project_status or BACKLOG)

        async def call() -> Optional[str]:
            await self.provider.update_status(ctx.repo, ctx.issue.number, option.id)
            return await self._run_completion(ctx, option)

        return await self._single(
            ctx, f"#{ctx.issue.number} → {option.name}", call,
            patch=_with_status(option.name),
            pending={"project_status": option.name},
            undo=self._status_undo(ctx, previous, option),
            retry=self._retry(lambda: self.handle_status_change(option_id, nav_id=ctx.nav_id)),
        )

    async def handle_assign(self, nav_id: Optional[str] = None) -> bool:
        """Pick: assign the issue to the configured user."""
        ctx = self._context(nav_id)
        if ctx is None:
            return False
        me = self.config.board.assignee
        if me in ctx.issue.assignees:
            self.notifier.info(f"Already assigned to @{me}")
            return False
        if ctx.issue.assignees:
            self.notifier.info(f"Already assigned to @{ctx.issue.assignees[0]}")
            return False
        before = list(ctx.issue.assignees)
        after = before + [me]

        async def undo() -> None:
            await self._apply(ctx, lambda: self.provider.unassign(ctx.repo.name, ctx.issue.number, me),
                              _with_assignees(before), {"assignees": before})

        return await self._single(
            ctx, f"Picked #{ctx.issue.number}",
            lambda: self.provider.assign(ctx.repo.name, ctx.issue.number, me),
            patch=_with_assignees(after), pending={"assignees": after}, undo=undo,
            retry=self._retry(lambda: self.handle_assign(nav_id=ctx.nav_id)),
        )

    async def handle_unassign(self, nav_id: Optional[str] = None) -> bool:
        ctx = self._context(nav_id)
        if ctx is None:
            return False
        me = self.config.board.assignee
        if me not in ctx.issue.assignees:
            self.notifier.info(f"#{ctx.issue.number} is not assigned to @{me}")
            return False
        before = list(ctx.issue.assignees)
        after = [a for a in before if a != me]

        async def undo() -> None:
            await self._apply(ctx, lambda: self.provider.assign(ctx.repo.name, ctx.issue.number, me),
                              _with_assignees(before), {"assignees": before})

        return await self._single(
            ctx, f"Unassigned #{ctx.issue.number}",
            lambda: self.provider.unassign(ctx.repo.name, ctx.issue.number, me),
            patch=_with_assignees(after), pending={"assignees": after}, undo=undo,
        )

    async def handle_add_label(self, label: str, nav_id: Optional[str] = None) -> bool:
        ctx = self._context(nav_id)
        label = (label or "").strip()
        if ctx is None or not label:
            return False
        if label in ctx.issue.labels:
            self.notifier.info(f"#{ctx.issue.number} already has {label}")
            return False
        before = list(ctx.issue.labels)
        after = before + [label]

        async def undo() -> None:
            await self._apply(ctx, lambda: self.provider.remove_label(ctx.repo.name, ctx.issue.number, label),
                              _with_labels(before), {"labels": before})

        return await self._single(
            ctx, f"#{ctx.issue.number} +{label}",
            lambda: self.provider.add_label(ctx.repo.name, ctx.issue.number, label),
            patch=_with_labels(after), pending={"labels": after}, undo=undo,
        )

    async def handle_remove_label(self, label: str, nav_id: Optional[str] = None) -> bool:
        ctx = self._context(nav_id)
        label = (label or "").strip()
        if ctx is None or label not in ctx.issue.labels:
            return False
        before = list(ctx.issue.labels)
        after = [l for l in before if l != label]

        async def undo() -> None:
            await self._apply(ctx, lambda: self.provider.add_label(ctx.repo.name, ctx.issue.number, label),
                              _with_labels(before), {"labels": before})

        return await self._single(
            ctx, f"#{ctx.issue.number} -{label}",
            lambda: self.provider.remove_label(ctx.repo.name, ctx.issue.number, label),
            patch=_with_labels(after), pending={"labels": after}, undo=undo,
        )

    async def handle_comment(self, body: str, nav_id: Optional[str] = None) -> bool:
        ctx = self._context(nav_id)
        body = (body or "").strip()
        if ctx is None or not body:
            return False
        return await self._single(
            ctx, f"Comment on #{ctx.issue.number}",
            lambda: self.provider.add_comment(ctx.repo.name, ctx.issue.number, body),
        )

    async def handle_create_issue(self, repo_name: str, title: str, body: str = "",
                                  labels: Optional[List[str]] = None) -> Optional[Tuple[str, int]]:
        repo = self.config.find_repo(repo_name)
        title = (title or "").strip()
        if repo is None or not title:
            return None
        labels = list(labels or [])
        entry = self.action_log.record(f"Create {repo.short_name}: {title}")
        handle = self.notifier.loading(f"Creating issue in {repo.short_name}…")
        try:
            number = await self.provider.create_issue(repo_name, title, body, labels)
        except Exception as exc:
            log.warning("Create issue in %s failed: %s", repo_name, exc)
            handle.reject(f"Create failed: {exc}")
            self.action_log.update(entry, status=ERROR)
            await self.store.refresh()
            return None
        created = Issue(number=number, title=title, body=body, labels=labels,
                        url=f"https://github.com/{repo_name}/issues/{number}")
        self.store.mutate_data(lambda data: insert_issue(data, repo_name, created))

        async def undo() -> None:
            self.store.mutate_data(lambda data: remove_issue(data, repo_name, number))
            await self.provider.close_issue(repo_name, number)

        handle.resolve(f"Created {repo.short_name}#{number}")
        self.action_log.update(entry, status=SUCCESS,
                               description=f"Created {repo.short_name}#{number}", undo=undo)
        return repo_name, number

    # bulk operations; each returns the ids that failed
    async def handle_bulk_assign(self, ids: Iterable[str]) -> List[str]:
        me = self.config.board.assignee

        async def apply_one(ctx: IssueContext) -> Optional[UndoStep]:
            if ctx.issue.assignees:
                return None
            after = [me]
            await self._apply(ctx, lambda: self.provider.assign(ctx.repo.name, ctx.issue.number, me),
                              _with_assignees(after), {"assignees": after})

            async def undo() -> None:
                await self._apply(ctx, lambda: self.provider.unassign(ctx.repo.name, ctx.issue.number, me),
                                  _with_assignees([]), {"assignees": []})
            return undo

        return await self._bulk(ids, "Assign", apply_one)

    async def handle_bulk_unassign(self, ids: Iterable[str]) -> List[str]:
        me = self.config.board.assignee

        async def apply_one(ctx: IssueContext) -> Optional[UndoStep]:
            if me not in ctx.issue.assignees:
                return None
            before = list(ctx.issue.assignees)
            after = [a for a in before if a != me]
            await self._apply(ctx, lambda: self.provider.unassign(ctx.repo.name, ctx.issue.number, me),
                              _with_assignees(after), {"assignees": after})

            async def undo() -> None:
                await self._apply(ctx, lambda: self.provider.assign(ctx.repo.name, ctx.issue.number, me),
                                  _with_assignees(before), {"assignees": before})
            return undo

        return await self._bulk(ids, "Unassign", apply_one)

    async def handle_bulk_status_change(self, ids: Iterable[str], option_id: str) -> List[str]:
        async def apply_one(ctx: IssueContext) -> Optional[UndoStep]:
            option = find_status_option(ctx.status_options, option_id=option_id)
            if option is None:
                raise RuntimeError(f"{ctx.repo.name} has no status option {option_id}")
            previous = find_status_option(ctx.status_options, name=ctx.issue.project_status or BACKLOG)

            async def call() -> Optional[str]:
                await self.provider.update_status(ctx.repo, ctx.issue.number, option.id)
                return await self._run_completion(ctx, option)

            await self._apply(ctx, call, _with_status(option.name), {"project_status": option.name})
            return self._status_undo(ctx, previous, option)

        return await self._bulk(ids, "Move", apply_one)


# -----------------------------
# Session
# -----------------------------
PICKER_MODES = (OVERLAY_STATUS, OVERLAY_BULK_ACTION, OVERLAY_CONFIRM_PICK)
TEXT_INPUT_MODES = (SEARCH, OVERLAY_COMMENT, OVERLAY_CREATE, OVERLAY_LABEL)
BULK_ACTIONS = [("assign", "Assign to me"), ("unassign", "Unassign me"), ("status", "Change status")]


@dataclass
class Picker:
    title: str
    options: List[Tuple[str, str]]  # (value, label)
    index: int = 0

    def move(self, step: int) -> None:
        if self.options:
            self.index = max(0, min(len(self.options) - 1, self.index + step))

    @property
    def current(self) -> Optional[str]:
        return self.options[self.index][0] if self.options else None


@dataclass(frozen=True)
class SessionSnapshot:
    visible_items: Tuple[NavItem, ...]
    selected_id: Optional[str]
    collapsed: frozenset
    mode: str
    help_visible: bool
    selected: Tuple[str, ...]
    action_log: Tuple[ActionLogEntry, ...]
    notifications: Tuple[Notification, ...]


class BoardSession:
    """Owns every piece of board state and wires input flows to them."""

    def __init__(self, config: Config, data_provider: DataProvider, mutation_provider: MutationProvider,
                 action_store: Optional[ActionLogStore] = None, clock: Callable[[], float] = time.monotonic):
        self.config = config
        self._clock = clock
        self.provider = mutation_provider
        self.notifier = Notifier(clock)
        self.store = DataStore(data_provider, clock)
        self.navigator = Navigator()
        self.multi_select = MultiSelect()
        self.ui = UIModeMachine()
        self.action_log = ActionLog(self.notifier, self.store.refresh, store=action_store)
        self.actions = Actions(config, self.store, mutation_provider, self.notifier, self.action_log,
                               lambda: self.navigator.selected_id)
        self.comments = DetailCache(self._load_comments)
        self.tree = BoardTree(sections=[])
        self.nav_items: List[NavItem] = []
        self.picker: Optional[Picker] = None
        self.input_buffer = ""
        self.overlay_target: Optional[str] = None
        self.create_repo: Optional[str] = None
        self.pending_pick: Optional[Tuple[str, int]] = None
        self.focus_label: Optional[str] = None
        self.focus_started_at: Optional[float] = None
        self._built_from: Optional[DashboardData] = None
        self._listeners: List[Callable[[], None]] = []
        self.store.subscribe(self._on_store_change)

    # state plumbing
    def subscribe(self, callback: Callable[[], None]) -> None:
        self._listeners.append(callback)

    def notify(self) -> None:
        for cb in list(self._listeners):
            cb()

    def _on_store_change(self) -> None:
        if self.store.data is not None and self.store.data is not self._built_from:
            self.rebuild()
        self.notify()

    def rebuild(self) -> None:
        data = self.store.data
        if data is None:
            return
        self._built_from = data
        self.tree = build_board_tree(data)
        self.nav_items = build_nav_items(self.tree)
        self.navigator.set_items(self.nav_items)
        self.multi_select.prune(item.id for item in self.nav_items)
        if self.multi_select.count == 0 and self.ui.mode == MULTI_SELECT:
            self.ui.clear_multi_select()
        self.comments.focus(self.navigator.selected_id)

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            visible_items=tuple(self.navigator.visible_items()),
            selected_id=self.navigator.selected_id,
            collapsed=frozenset(self.navigator.collapsed),
            mode=self.ui.mode,
            help_visible=self.ui.state.help_visible,
            selected=self.multi_select.selected,
            action_log=tuple(self.action_log.recent()),
            notifications=tuple(self.notifier.items),
        )

    def selected_context(self) -> Optional[IssueContext]:
        return find_issue_context(self.store.data, self.navigator.selected_id)

    def current_repo(self) -> Optional[RepoConfig]:
        item = self.navigator.selected_item
        repo = self.config.find_repo(item.section_id) if item else None
        return repo or (self.config.repos[0] if self.config.repos else None)

    async def _load_comments(self, key: str) -> List[IssueComment]:
        parsed = parse_issue_nav_id(key)
        if parsed is None:
            return []
        return await self.provider.fetch_comments(*parsed)

    # navigation
    def navigate(self, action: str) -> None:
        if not self.ui.can_navigate:
            return
        moves = {
            "down": self.navigator.move_down,
            "up": self.navigator.move_up,
            "next_section": self.navigator.next_section,
            "prev_section": self.navigator.prev_section,
            "toggle_section": self.navigator.toggle_section,
            "collapse_all": self.navigator.collapse_all,
        }
        moves[action]()
        self.comments.focus(self.navigator.selected_id)
        self.notify()

    def toggle_selection(self) -> None:
        if self.ui.mode not in (NORMAL, MULTI_SELECT):
            return
        nav_id = self.navigator.selected_id
        if not nav_id or parse_issue_nav_id(nav_id) is None:
            return
        self.multi_select.toggle(nav_id)
        if self.multi_select.count:
            self.ui.enter_multi_select()
        else:
            self.ui.clear_multi_select()
        self.notify()

    # overlays
    def open_status_picker(self) -> None:
        if self.ui.mode == OVERLAY_BULK_ACTION:
            ctx = find_issue_context(self.store.data, next(iter(self.multi_select.selected), None))
        else:
            ctx = self.selected_context() if self.ui.can_act else None
        if ctx is None or not ctx.status_options:
            return
        bulk = self.ui.mode == OVERLAY_BULK_ACTION
        if self.ui.enter_status():
            options = [(o.id, o.name) for o in ctx.status_options]
            self.picker = Picker("Status", options)
            self.overlay_target = None if bulk else ctx.nav_id
        self.notify()

    def open_bulk_menu(self) -> None:
        if self.ui.enter_bulk_action():
            self.picker = Picker(f"{self.multi_select.count} selected", list(BULK_ACTIONS))
        self.notify()

    def open_text_input(self, mode: str) -> None:
        enter = {
            SEARCH: self.ui.enter_search,
            OVERLAY_COMMENT: self.ui.enter_comment,
            OVERLAY_CREATE: self.ui.enter_create,
            OVERLAY_LABEL: self.ui.enter_label,
        }[mode]
        target = None
        if mode in (OVERLAY_COMMENT, OVERLAY_LABEL):
            ctx = self.selected_context()
            if ctx is None:
                return
            target = ctx.nav_id
        if mode == OVERLAY_CREATE:
            repo = self.current_repo()
            if repo is None:
                return
            self.create_repo = repo.name
        if enter():
            self.input_buffer = ""
            self.overlay_target = target
        self.notify()

    def _resolve_target(self, nav_id: Optional[str]) -> Optional[IssueContext]:
        ctx = find_issue_context(self.store.data, nav_id) if nav_id else None
        if ctx is None and nav_id:
            parsed = parse_issue_nav_id(nav_id)
            ref = f"#{parsed[1]}" if parsed else nav_id
            self.notifier.info(f"{ref} is no longer on the board")
        return ctx

    def open_detail(self) -> bool:
        if self.selected_context() is None or not self.ui.enter_detail():
            return False
        self.notify()
        return True

    def close_overlay(self) -> None:
        mode = self.ui.mode
        self.ui.exit_overlay()
        if self.ui.mode != mode:
            self.picker = None
            self.input_buffer = ""
            self.overlay_target = None
        self.notify()

    def _finish_overlay(self) -> None:
        if self.ui.state.help_visible:
            self.ui.toggle_help()
        self.close_overlay()

    def escape(self) -> None:
        state = self.ui.state
        if state.help_visible or state.is_overlay:
            self.close_overlay()
        elif state.mode == MULTI_SELECT:
            self.multi_select.clear()
            self.ui.clear_multi_select()
            self.notify()
        elif state.mode == FOCUS:
            self.exit_focus()

    def toggle_help(self) -> None:
        self.ui.toggle_help()
        self.notify()

    async def choose_picker(self) -> None:
        if self.picker is None:
            return
        value = self.picker.current
        mode = self.ui.mode
        if value is None:
            return
        if mode == OVERLAY_STATUS:
            await self.choose_status(value)
        elif mode == OVERLAY_BULK_ACTION:
            await self.run_bulk_action(value)
        elif mode == OVERLAY_CONFIRM_PICK:
            await self.confirm_pick(value == "yes")

    async def choose_status(self, option_id: str) -> None:
        bulk = self.ui.state.previous_mode == MULTI_SELECT
        targets = list(self.multi_select.selected)
        target = self.overlay_target
        self._finish_overlay()
        if bulk:
            failed = await self.actions.handle_bulk_status_change(targets, option_id)
            self._after_bulk(failed)
        elif self._resolve_target(target) is not None:
            await self.actions.handle_status_change(option_id, nav_id=target)
        self.notify()

    async def run_bulk_action(self, action: str) -> None:
        if action == "status":
            self.open_status_picker()
            return
        targets = list(self.multi_select.selected)
        self._finish_overlay()
        if action == "assign":
            failed = await self.actions.handle_bulk_assign(targets)
        else:
            failed = await self.actions.handle_bulk_unassign(targets)
        self._after_bulk(failed)
        self.notify()

    def _after_bulk(self, failed: List[str]) -> None:
        self.multi_select.clear()
        for nav_id in failed:
            self.multi_select.toggle(nav_id)
        if self.multi_select.count:
            self.ui.enter_multi_select()
        else:
            self.ui.clear_multi_select()

    async def submit_input(self) -> None:
        mode = self.ui.mode
        text = self.input_buffer.strip()
        nav_id = self.overlay_target
        self._finish_overlay()
        if not text:
            return
        if mode in (OVERLAY_COMMENT, OVERLAY_LABEL) and self._resolve_target(nav_id) is None:
            self.notify()
            return
        if mode == SEARCH:
            self.jump_to_match(text)
        elif mode == OVERLAY_COMMENT:
            if await self.actions.handle_comment(text, nav_id=nav_id):
                self.comments.invalidate(nav_id)
        elif mode == OVERLAY_LABEL:
            for token in text.split():
                if token.startswith("-"):
                    await self.actions.handle_remove_label(token[1:], nav_id=nav_id)
                else:
                    await self.actions.handle_add_label(token.lstrip("+"), nav_id=nav_id)
        elif mode == OVERLAY_CREATE and self.create_repo:
            await self.create_issue(self.create_repo, text)
        self.notify()

    async def create_issue(self, repo_name: str, title: str, body: str = "",
                           labels: Optional[List[str]] = None) -> Optional[Tuple[str, int]]:
        created = await self.actions.handle_create_issue(repo_name, title, body, labels)
        if created is None:
            return None
        self.pending_pick = created
        if self.ui.enter_confirm_pick():
            self.picker = Picker(f"Pick #{created[1]}?", [("yes", "Yes, assign to me"), ("no", "No")])
        self.notify()
        return created

    async def confirm_pick(self, accept: bool) -> bool:
        pending = self.pending_pick
        self.pending_pick = None
        self._finish_overlay()
        if not (accept and pending):
            return False
        return await self.actions.handle_assign(nav_id=issue_nav_id(*pending))

    # search
    def search_matches(self, query: str) -> List[str]:
        q = query.strip().lower()
        if not q:
            return []
        out = []
        for section in self.tree.sections:
            for group in section.groups:
                for issue in group.issues:
                    if q in issue.title.lower() or q == f"#{issue.number}" or q == str(issue.number):
                        out.append(issue_nav_id(section.section_id, issue.number))
        return out

    def jump_to_match(self, query: str) -> bool:
        matches = self.search_matches(query)
        if not matches:
            self.notifier.info(f"No match for {query!r}")
            return False
        self.navigator.select(matches[0])
        self.comments.focus(self.navigator.selected_id)
        return True

    # focus mode
    def enter_focus(self) -> bool:
        item = self.navigator.selected_item
        if item is None or item.kind != ITEM:
            return False
        ctx = self.selected_context()
        if ctx is not None:
            label = f"{ctx.repo.short_name}#{ctx.issue.number} {ctx.issue.title}"
        else:
            task = next((t for t in self.tree.tasks if task_nav_id(t.id) == item.id), None)
            if task is None:
                return False
            label = task.title
        if not self.ui.enter_focus():
            return False
        self.focus_label = label
        self.focus_started_at = self._clock()
        self.notify()
        return True

    def focus_remaining(self, now: Optional[float] = None) -> int:
        if self.focus_started_at is None:
            return 0
        now = self._clock() if now is None else now
        return max(0, int(self.config.board.focus_duration - (now - self.focus_started_at)))

    def exit_focus(self) -> None:
        if self.ui.mode != FOCUS:
            return
        self.ui.exit_to_normal()
        self.focus_label = None
        self.focus_started_at = None
        self.notify()

    # misc
    async def undo(self) -> bool:
        done = await self.action_log.undo_last()
        self.notify()
        return done

    async def refresh(self) -> bool:
        if self.store.auto_refresh_paused:
            self.store.resume_auto_refresh()
        return await self.store.refresh()

    async def load_detail(self) -> object:
        nav_id = self.navigator.selected_id
        if parse_issue_nav_id(nav_id) is None:
            return NOT_FETCHED
        state = await self.comments.ensure_loaded(nav_id)
        self.notify()
        return state


# -----------------------------
# Key bindings
# -----------------------------
def build_key_bindings(session: BoardSession) -> KeyBindings:
    kb = KeyBindings()
    ui = session.ui

    def _help() -> bool:
        return ui.state.help_visible

    is_navigable = Condition(lambda: ui.can_navigate and not _help())
    is_actionable = Condition(lambda: ui.can_act and not _help())
    is_selecting = Condition(lambda: ui.mode in (NORMAL, MULTI_SELECT) and not _help())
    is_multi = Condition(lambda: ui.mode == MULTI_SELECT and not _help())
    is_picking = Condition(lambda: ui.mode in PICKER_MODES and session.picker is not None and not _help())
    is_typing = Condition(lambda: ui.mode in TEXT_INPUT_MODES and not _help())
    not_typing = Condition(lambda: ui.mode not in TEXT_INPUT_MODES)

    def spawn(event, coro) -> None:
        event.app.create_background_task(coro)

    @kb.add('j', filter=is_navigable)
    @kb.add('down', filter=is_navigable)
    def _(event):
        session.navigate("down")

    @kb.add('k', filter=is_navigable)
    @kb.add('up', filter=is_navigable)
    def _(event):
        session.navigate("up")

    @kb.add('tab', filter=is_navigable)
    def _(event):
        session.navigate("next_section")

    @kb.add('s-tab', filter=is_navigable)
    def _(event):
        session.navigate("prev_section")

    @kb.add('enter', filter=is_navigable)
    def _(event):
        session.navigate("toggle_section")

    @kb.add('C', filter=is_navigable)
    def _(event):
        session.navigate("collapse_all")

    @kb.add('space', filter=is_selecting)
    def _(event):
        session.toggle_selection()

    @kb.add('m', filter=is_actionable)
    def _(event):
        session.open_status_picker()

    @kb.add('m', filter=is_multi)
    def _(event):
        session.open_bulk_menu()

    @kb.add('p', filter=is_actionable)
    def _(event):
        spawn(event, session.actions.handle_assign())

    @kb.add('U', filter=is_actionable)
    def _(event):
        spawn(event, session.actions.handle_unassign())

    @kb.add('c', filter=is_actionable)
    def _(event):
        session.open_text_input(OVERLAY_COMMENT)

    @kb.add('l', filter=is_actionable)
    def _(event):
        session.open_text_input(OVERLAY_LABEL)

    @kb.add('n', filter=is_actionable)
    def _(event):
        session.open_text_input(OVERLAY_CREATE)

    @kb.add('/', filter=is_actionable)
    def _(event):
        session.open_text_input(SEARCH)

    @kb.add('o', filter=is_actionable)
    def _(event):
        if session.open_detail():
            spawn(event, session.load_detail())

    @kb.add('f', filter=is_actionable)
    def _(event):
        session.enter_focus()

    @kb.add('u', filter=is_actionable)
    def _(event):
        spawn(event, session.undo())

    @kb.add('r', filter=is_actionable)
    def _(event):
        spawn(event, session.refresh())

    @kb.add('R', filter=is_actionable)
    def _(event):
        session.notifier.handle_error_action("retry")
        session.notify()

    @kb.add('x', filter=is_actionable)
    def _(event):
        session.notifier.handle_error_action("dismiss")
        session.notify()

    @kb.add('?', filter=not_typing)
    def _(event):
        session.toggle_help()

    @kb.add('escape')
    def _(event):
        session.escape()

    # pickers
    @kb.add('j', filter=is_picking)
    @kb.add('down', filter=is_picking)
    def _(event):
        session.picker.move(1)
        session.notify()

    @kb.add('k', filter=is_picking)
    @kb.add('up', filter=is_picking)
    def _(event):
        session.picker.move(-1)
        session.notify()

    @kb.add('enter', filter=is_picking)
    def _(event):
        spawn(event, session.choose_picker())

    # text input
    @kb.add(Keys.Any, filter=is_typing)
    def _(event):
        if event.data and event.data.isprintable():
            session.input_buffer += event.data
            session.notify()

    @kb.add('backspace', filter=is_typing)
    def _(event):
        session.input_buffer = session.input_buffer[:-1]
        session.notify()

    @kb.add('enter', filter=is_typing)
    def _(event):
        spawn(event, session.submit_input())

    @kb.add('q', filter=is_actionable)
    @kb.add('c-c')
    def _(event):
        session.store.stop()
        event.app.exit()

    return kb


# -----------------------------
# Rendering
# -----------------------------
BASE_STYLE = {
    "header": "bold #5fafff",
    "header.error": "bold #ff5f5f",
    "group": "#afafaf",
    "cursor": "reverse",
    "picked": "#ffd75f",
    "muted": "#6c6c6c",
    "note.info": "#87afff",
    "note.success": "#5fd75f",
    "note.error": "#ff5f5f",
    "note.loading": "#d7d75f",
    "age.fresh": "#5fd75f",
    "age.aging": "#d7d75f",
    "age.stale": "#ff5f5f",
    "overlay": "bg:#303030 #ffffff",
}

HELP_TEXT = """j/k move   tab/s-tab sections   enter collapse   C collapse all
space select   m status / bulk menu   p pick   U unassign   l labels
c comment   o detail   n new issue   f focus   / search   u undo
r refresh   R retry error   x dismiss error   ? help   esc back   q quit"""


def _row_texts(tree: BoardTree) -> Dict[str, str]:
    rows: Dict[str, str] = {}
    for section in tree.sections:
        suffix = " (error)" if section.error else f" ({section.issue_count})"
        rows[header_id(section.section_id)] = f"{section.repo.short_name}{suffix}"
        for group in section.groups:
            rows[group.sub_id] = f"{group.label} ({len(group.issues)})"
            for issue in group.issues:
                extra = ""
                if issue.assignees:
                    extra += " @" + ",".join(issue.assignees)
                if issue.labels:
                    extra += " [" + ", ".join(issue.labels) + "]"
                rows[issue_nav_id(section.section_id, issue.number)] = f"#{issue.number} {issue.title}{extra}"
    if tree.tasks:
        rows[header_id(TASKS_SECTION)] = f"Tasks ({len(tree.tasks)})"
        for task in tree.tasks:
            due = f" due {task.due_date}" if task.due_date else ""
            rows[task_nav_id(task.id)] = f"{task.title}{due}"
    if tree.activity:
        rows[header_id(ACTIVITY_SECTION)] = f"Activity ({len(tree.activity)})"
        for nav_id, event in zip(activity_nav_ids(tree.activity), tree.activity):
            rows[nav_id] = f"{time_ago(event.timestamp)}  {event.repo_short_name}: {event.actor} {event.summary}"
    return rows


def build_fragments(session: BoardSession) -> List[Tuple[str, str]]:
    frags: List[Tuple[str, str]] = []
    store = session.store
    age = refresh_age_color(store.last_refresh)
    status = "refreshing…" if store.is_refreshing else f"updated {time_ago(store.last_refresh)}"
    if store.auto_refresh_paused:
        status += " (auto-refresh paused, r to retry)"
    frags.append(("class:header", "hog board  "))
    frags.append((f"class:age.{age}", status))
    frags.append(("", "\n"))
    if store.data is None:
        frags.append(("class:muted", "Loading…\n" if store.status == "loading" else f"Error: {store.error}\n"))
        return frags

    if session.ui.mode == FOCUS and session.focus_label:
        mins, secs = divmod(session.focus_remaining(), 60)
        frags.append(("class:overlay", f" FOCUS {mins:02d}:{secs:02d}  {session.focus_label} \n"))

    rows = _row_texts(session.tree)
    sections = {s.section_id: s for s in session.tree.sections}
    nav = session.navigator
    for item in nav.visible_items():
        style = "class:cursor" if item.id == nav.selected_id else ""
        text = rows.get(item.id, item.id)
        if item.kind == HEADER:
            marker = "▸ " if nav.is_collapsed(item.id) else "▾ "
            section = sections.get(item.section_id)
            head_style = "class:header.error" if section is not None and section.error else "class:header"
            frags.append((style or head_style, marker + text))
            frags.append(("", "\n"))
            if section is not None and not nav.is_collapsed(item.id):
                if section.error:
                    frags.append(("class:header.error", f"    {section.error}\n"))
                elif not section.groups:
                    frags.append(("class:muted", "    No open issues\n"))
        elif item.kind == SUB_HEADER:
            marker = "▸ " if nav.is_collapsed(item.id) else "▾ "
            frags.append((style or "class:group", "  " + marker + text))
            frags.append(("", "\n"))
        else:
            mark = "● " if session.multi_select.is_selected(item.id) else "  "
            frags.append((style or ("class:picked" if mark.strip() else ""), "    " + mark + text))
            frags.append(("", "\n"))

    if session.picker is not None and session.ui.mode in PICKER_MODES:
        frags.append(("class:overlay", f"\n {session.picker.title} \n"))
        for idx, (_, label) in enumerate(session.picker.options):
            frags.append(("class:cursor" if idx == session.picker.index else "class:overlay", f"  {label}\n"))
    elif session.ui.mode in TEXT_INPUT_MODES:
        prompts = {SEARCH: "Search", OVERLAY_COMMENT: "Comment", OVERLAY_CREATE: "New issue title",
                   OVERLAY_LABEL: "Labels (+add -remove)"}
        frags.append(("class:overlay", f"\n {prompts[session.ui.mode]}: {session.input_buffer}█\n"))
    elif session.ui.mode == OVERLAY_DETAIL:
        frags.extend(_detail_fragments(session))

    if session.ui.state.help_visible:
        frags.append(("class:overlay", "\n" + HELP_TEXT + "\n"))

    entries = session.action_log.recent()
    if entries:
        frags.append(("class:muted", "\n"))
        for entry in entries:
            mark = {PENDING: "…", SUCCESS: "✓", ERROR: "✗"}.get(entry.status, "?")
            undo = " (u to undo)" if entry.undo else ""
            frags.append(("class:muted", f"{mark} {entry.description}{undo}\n"))
    for note in session.notifier.items:
        frags.append((f"class:note.{note.kind}", f"{note.message}\n"))
    return frags


def _detail_fragments(session: BoardSession) -> List[Tuple[str, str]]:
    ctx = session.selected_context()
    if ctx is None:
        return []
    frags = [("class:overlay", f"\n {ctx.repo.short_name}#{ctx.issue.number} {ctx.issue.title} \n")]
    if ctx.issue.body:
        frags.append(("", ctx.issue.body.strip()[:800] + "\n"))
    state = session.comments.get(ctx.nav_id)
    if state is LOADING or state is NOT_FETCHED:
        frags.append(("class:muted", "Loading comments…\n"))
    elif isinstance(state, Failed):
        frags.append(("class:note.error", f"Comments failed: {state.error}\n"))
    elif isinstance(state, Loaded):
        for comment in state.value or []:
            frags.append(("class:muted", f"@{comment.author}: "))
            frags.append(("", comment.body.strip()[:300] + "\n"))
    return frags


def format_summary(tree: BoardTree) -> List[str]:
    lines = []
    for section in tree.sections:
        if section.error:
            lines.append(f"{section.repo.short_name}: error: {section.error}")
            continue
        counts = ", ".join(f"{g.label} {len(g.issues)}" for g in section.groups) or "no open issues"
        lines.append(f"{section.repo.short_name}: {counts}")
    if tree.tasks:
        lines.append(f"tasks: {len(tree.tasks)}")
    return lines


def run_ui(session: BoardSession) -> None:
    control = FormattedTextControl(text=lambda: build_fragments(session), focusable=True)
    body = Window(content=control, wrap_lines=False, always_hide_cursor=True)
    app = Application(
        layout=Layout(HSplit([body])),
        key_bindings=build_key_bindings(session),
        full_screen=True,
        style=Style.from_dict(BASE_STYLE),
    )
    session.subscribe(app.invalidate)

    async def _ticker():
        while True:
            await asyncio.sleep(1)
            expired = session.notifier.expire()
            if expired or session.ui.mode == FOCUS or session.store.last_refresh is not None:
                app.invalidate()
            if session.ui.mode == FOCUS and session.focus_remaining() == 0:
                session.notifier.success("Focus session complete")
                session.exit_focus()

    def _pre_run():
        app.create_background_task(session.store.refresh())
        app.create_background_task(session.store.run_auto_refresh(session.config.board.refresh_interval))
        app.create_background_task(_ticker())

    try:
        app.run(pre_run=_pre_run)
    finally:
        session.store.stop()


# -----------------------------
# CLI
# -----------------------------
def main() -> None:
    ap = argparse.ArgumentParser(description="Terminal board for GitHub Projects issues")
    ap.add_argument("--config", default=os.path.expanduser("~/.config/hog_board/config.yaml"), help="Path to YAML config")
    ap.add_argument("--db", default=os.path.expanduser("~/.hog_board.db"), help="Path to sqlite action log")
    ap.add_argument("--log-level", default="ERROR", help="File log level (DEBUG, INFO, WARNING, ERROR)")
    ap.add_argument("--log-file", default=os.path.expanduser("~/.hog_board.log"), help="Path to the log file")
    ap.add_argument("--mock", action="store_true", help="Use generated data instead of GitHub")
    ap.add_argument("--no-ui", action="store_true", help="Fetch once, print a summary and exit")
    args = ap.parse_args()

    setup_logging(args.log_file, args.log_level)
    try:
        config = load_config(args.config)
    except (OSError, ValueError) as e:
        print(f"Config error: {e}", file=sys.stderr)
        sys.exit(2)

    if args.mock or os.environ.get("MOCK_FETCH") == "1":
        data_provider = MockDataProvider(config)
        mutation_provider: MutationProvider = MockMutationProvider(data_provider)
    else:
        token = resolve_token()
        if not token:
            print("GITHUB_TOKEN is not set (environment or .env)", file=sys.stderr)
            sys.exit(2)
        client = GitHubClient(token)
        data_provider = GitHubDataProvider(client, config)
        mutation_provider = GitHubMutationProvider(client)

    action_store = None
    try:
        action_store = ActionLogStore(args.db)
    except sqlite3.Error as e:
        log.warning("Action log store unavailable at %s: %s", args.db, e)

    session = BoardSession(config, data_provider, mutation_provider, action_store=action_store)
    try:
        if args.no_ui:
            if not asyncio.run(session.store.refresh()):
                print(f"Refresh failed: {session.store.error}", file=sys.stderr)
                sys.exit(1)
            for line in format_summary(session.tree):
                print(line)
            return
        run_ui(session)
    finally:
        if action_store is not None:
            action_store.close()


if __name__ == "__main__":
    main()
