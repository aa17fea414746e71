import pytest

import hog_board as hb


def test_initial_state():
    state = hb.UIState()
    assert state.mode == hb.NORMAL
    assert not state.help_visible
    assert state.can_act and state.can_navigate and not state.is_overlay


@pytest.mark.parametrize("event, mode", [
    (hb.ENTER_SEARCH, hb.SEARCH),
    (hb.ENTER_COMMENT, hb.OVERLAY_COMMENT),
    (hb.ENTER_STATUS, hb.OVERLAY_STATUS),
    (hb.ENTER_CREATE, hb.OVERLAY_CREATE),
    (hb.ENTER_CREATE_NL, hb.OVERLAY_CREATE_NL),
    (hb.ENTER_LABEL, hb.OVERLAY_LABEL),
    (hb.ENTER_FOCUS, hb.FOCUS),
    (hb.ENTER_FUZZY_PICKER, hb.OVERLAY_FUZZY_PICKER),
    (hb.ENTER_EDIT_ISSUE, hb.OVERLAY_EDIT_ISSUE),
    (hb.ENTER_DETAIL, hb.OVERLAY_DETAIL),
    (hb.ENTER_MULTI_SELECT, hb.MULTI_SELECT),
])
def test_entries_from_normal(event, mode):
    assert hb.transition(hb.UIState(), event).mode == mode


@pytest.mark.parametrize("event", [hb.ENTER_SEARCH, hb.ENTER_COMMENT, hb.ENTER_FOCUS, hb.ENTER_LABEL])
def test_entries_rejected_outside_normal(event):
    state = hb.UIState(mode=hb.OVERLAY_STATUS)
    assert hb.transition(state, event) is state


def test_bulk_action_only_from_multi_select():
    normal = hb.UIState()
    assert hb.transition(normal, hb.ENTER_BULK_ACTION) is normal
    multi = hb.transition(normal, hb.ENTER_MULTI_SELECT)
    bulk = hb.transition(multi, hb.ENTER_BULK_ACTION)
    assert bulk.mode == hb.OVERLAY_BULK_ACTION


def test_status_from_bulk_menu_returns_to_multi_select():
    state = hb.UIState()
    for event in (hb.ENTER_MULTI_SELECT, hb.ENTER_BULK_ACTION, hb.ENTER_STATUS):
        state = hb.transition(state, event)
    assert state.mode == hb.OVERLAY_STATUS
    assert state.previous_mode == hb.MULTI_SELECT
    state = hb.transition(state, hb.EXIT_OVERLAY)
    assert state.mode == hb.MULTI_SELECT


def test_multi_select_reentry_is_idempotent():
    multi = hb.transition(hb.UIState(), hb.ENTER_MULTI_SELECT)
    assert hb.transition(multi, hb.ENTER_MULTI_SELECT) is multi


@pytest.mark.parametrize("mode", [hb.NORMAL, hb.MULTI_SELECT, hb.SEARCH, hb.OVERLAY_CREATE, hb.FOCUS])
def test_confirm_pick_reachable_from_any_mode(mode):
    state = hb.transition(hb.UIState(mode=mode), hb.ENTER_CONFIRM_PICK)
    assert state.mode == hb.OVERLAY_CONFIRM_PICK
    assert state.previous_mode == hb.NORMAL
    assert hb.transition(state, hb.EXIT_OVERLAY).mode == hb.NORMAL


def test_exit_overlay_closes_help_first():
    state = hb.transition(hb.UIState(mode=hb.OVERLAY_COMMENT), hb.TOGGLE_HELP)
    state = hb.transition(state, hb.EXIT_OVERLAY)
    assert state.mode == hb.OVERLAY_COMMENT
    assert not state.help_visible
    assert hb.transition(state, hb.EXIT_OVERLAY).mode == hb.NORMAL


def test_exit_to_normal_resets_everything():
    state = hb.UIState(mode=hb.OVERLAY_STATUS, help_visible=True, previous_mode=hb.MULTI_SELECT)
    assert hb.transition(state, hb.EXIT_TO_NORMAL) == hb.UIState()


def test_clear_multi_select_only_from_multi_select():
    search = hb.UIState(mode=hb.SEARCH)
    assert hb.transition(search, hb.CLEAR_MULTI_SELECT) is search
    multi = hb.UIState(mode=hb.MULTI_SELECT)
    assert hb.transition(multi, hb.CLEAR_MULTI_SELECT).mode == hb.NORMAL


def test_toggle_help_keeps_mode():
    state = hb.transition(hb.UIState(mode=hb.FOCUS), hb.TOGGLE_HELP)
    assert state.mode == hb.FOCUS and state.help_visible


def test_unknown_event_is_noop():
    state = hb.UIState()
    assert hb.transition(state, "bogus") is state


@pytest.mark.parametrize("mode, navigate, act, overlay", [
    (hb.NORMAL, True, True, False),
    (hb.MULTI_SELECT, True, False, False),
    (hb.FOCUS, True, False, False),
    (hb.SEARCH, False, False, True),
    (hb.OVERLAY_DETAIL, False, False, True),
])
def test_predicates(mode, navigate, act, overlay):
    state = hb.UIState(mode=mode)
    assert (state.can_navigate, state.can_act, state.is_overlay) == (navigate, act, overlay)


def test_machine_reports_changes():
    ui = hb.UIModeMachine()
    assert ui.enter_search()
    assert not ui.enter_comment()
    assert ui.exit_overlay()
    assert ui.mode == hb.NORMAL
