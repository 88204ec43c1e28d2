import json
import threading

import pytest

from mcpkit.thinking import (
    ContinueThinkingArgs,
    ReviewThinkingArgs,
    SequentialThinking,
    SessionStore,
    StartThinkingArgs,
    Thought,
    ThinkingSession,
    rand_text,
)


@pytest.fixture
def tools():
    return SequentialThinking(SessionStore())


def test_start_thinking(tools):
    text = tools.start_thinking(StartThinkingArgs(
        problem="How to implement a binary search algorithm",
        session_id="test_session",
        estimated_steps=5,
    ))
    assert "test_session" in text
    assert "How to implement a binary search algorithm" in text

    session = tools.store.session("test_session")
    assert session is not None
    assert session.problem == "How to implement a binary search algorithm"
    assert session.estimated_total == 5
    assert session.status == "active"


def test_start_thinking_defaults(tools):
    text = tools.start_thinking(StartThinkingArgs(problem="p"))
    sessions = tools.store.sessions()
    assert len(sessions) == 1
    assert len(sessions[0].id) == 26
    assert sessions[0].estimated_total == 5
    assert "Estimated steps: 5" in text


def test_continue_thinking(tools):
    tools.start_thinking(StartThinkingArgs(
        problem="Test problem", session_id="test_continue", estimated_steps=3))
    thought = "First thought: I need to understand the problem"
    text = tools.continue_thinking(ContinueThinkingArgs(session_id="test_continue", thought=thought))
    assert "Step 1" in text
    assert text == (
        "Session 'test_continue' - Step 1 of ~3:\n"
        f"{thought}\nReady for next thought..."
    )

    session = tools.store.session("test_continue")
    assert len(session.thoughts) == 1
    assert session.thoughts[0].content == thought
    assert session.current_thought == 1
    assert session.version == 1


def test_continue_thinking_updates_estimate(tools):
    tools.start_thinking(StartThinkingArgs(problem="p", session_id="s"))
    text = tools.continue_thinking(ContinueThinkingArgs(session_id="s", thought="t", estimated_total=9))
    assert "Step 1 of ~9" in text
    assert tools.store.session("s").estimated_total == 9


def test_continue_thinking_with_completion(tools):
    tools.start_thinking(StartThinkingArgs(problem="Simple test", session_id="test_completion"))
    text = tools.continue_thinking(ContinueThinkingArgs(
        session_id="test_completion", thought="Final thought", next_needed=False))
    assert "completed" in text
    assert tools.store.session("test_completion").status == "completed"


def test_continue_thinking_revision(tools):
    tools.store.set_session(ThinkingSession(
        id="test_revision",
        problem="Test problem",
        thoughts=[Thought(index=1, content="Original thought"), Thought(index=2, content="Second thought")],
        current_thought=2,
        estimated_total=3,
    ))
    text = tools.continue_thinking(ContinueThinkingArgs(
        session_id="test_revision", thought="Revised first thought", revise_step=1))
    assert "Revised step 1" in text

    updated = tools.store.session("test_revision")
    assert updated.thoughts[0].content == "Revised first thought"
    assert updated.thoughts[0].revised is True
    assert updated.thoughts[1].revised is False


def test_continue_thinking_branching(tools):
    tools.store.set_session(ThinkingSession(
        id="test_branch",
        problem="Test problem",
        thoughts=[Thought(index=1, content="First thought")],
        current_thought=1,
        estimated_total=3,
    ))
    text = tools.continue_thinking(ContinueThinkingArgs(
        session_id="test_branch", thought="Alternative approach", create_branch=True))
    assert "Created branch" in text

    updated = tools.store.session("test_branch")
    assert len(updated.branches) == 1
    branch_id = updated.branches[0]
    assert "test_branch_branch_" in branch_id

    branch = tools.store.session(branch_id)
    assert branch is not None
    assert len(branch.thoughts) == 1
    assert branch.problem == "Test problem (Alternative branch)"
    assert branch.current_thought == 1


def test_review_thinking(tools):
    tools.store.set_session(ThinkingSession(
        id="test_review",
        problem="Complex problem",
        thoughts=[
            Thought(index=1, content="First thought"),
            Thought(index=2, content="Second thought", revised=True),
            Thought(index=3, content="Final thought"),
        ],
        current_thought=3,
        estimated_total=3,
        status="completed",
        branches=["test_review_branch_1"],
    ))
    review = tools.review_thinking(ReviewThinkingArgs(session_id="test_review"))
    assert "test_review" in review
    assert "Complex problem" in review
    assert "completed" in review
    assert "Steps: 3 of ~3" in review
    assert "First thought" in review
    assert "2. Second thought (revised)" in review
    assert "Branches: test_review_branch_1" in review


def test_thinking_history(tools):
    tools.store.set_session(ThinkingSession(
        id="session1", problem="Problem 1",
        thoughts=[Thought(index=1, content="Thought 1")],
        current_thought=1, estimated_total=2,
    ))
    tools.store.set_session(ThinkingSession(
        id="session2", problem="Problem 2",
        thoughts=[Thought(index=1, content="Thought 1")],
        current_thought=1, estimated_total=3, status="completed",
    ))

    listing = tools.thinking_history("thinking://sessions")
    assert listing["mimeType"] == "application/json"
    assert listing["uri"] == "thinking://sessions"
    sessions = json.loads(listing["text"])
    assert len(sessions) == 2
    assert {s["id"] for s in sessions} == {"session1", "session2"}

    single = json.loads(tools.thinking_history("thinking://session1")["text"])
    assert single["id"] == "session1"
    assert single["problem"] == "Problem 1"
    assert single["thoughts"][0]["content"] == "Thought 1"


def test_thinking_history_errors(tools):
    with pytest.raises(ValueError, match="scheme"):
        tools.thinking_history("http://sessions")
    with pytest.raises(LookupError, match="session missing not found"):
        tools.thinking_history("thinking://missing")


def test_invalid_operations(tools):
    with pytest.raises(LookupError):
        tools.continue_thinking(ContinueThinkingArgs(session_id="nonexistent", thought="Some thought"))
    with pytest.raises(LookupError):
        tools.review_thinking(ReviewThinkingArgs(session_id="nonexistent"))

    tools.store.set_session(ThinkingSession(
        id="test_invalid", problem="Test",
        thoughts=[Thought(index=1, content="Thought")],
        current_thought=1, estimated_total=2,
    ))
    with pytest.raises(ValueError, match="invalid step number: 5"):
        tools.continue_thinking(ContinueThinkingArgs(
            session_id="test_invalid", thought="Revised", revise_step=5))
    assert tools.store.session("test_invalid").thoughts[0].content == "Thought"
    assert tools.store.session("test_invalid").version == 0


def test_clone_is_deep():
    original = ThinkingSession(
        id="s", problem="p", thoughts=[Thought(index=1, content="a")], branches=["b"])
    twin = original.clone()
    twin.thoughts[0].content = "changed"
    twin.branches.append("c")
    assert original.thoughts[0].content == "a"
    assert original.branches == ["b"]
    assert twin.id == "s"


def test_snapshot_is_independent():
    store = SessionStore()
    store.set_session(ThinkingSession(id="s", problem="p", thoughts=[Thought(index=1, content="a")]))
    snap = store.session_snapshot("s")
    snap.thoughts[0].content = "x"
    assert store.session("s").thoughts[0].content == "a"
    assert store.session_snapshot("missing") is None


def test_compare_and_swap_concurrent_increments():
    store = SessionStore()
    store.set_session(ThinkingSession(id="s", problem="p"))

    def bump(session):
        session.current_thought += 1
        return session

    workers = [
        threading.Thread(target=lambda: [store.compare_and_swap("s", bump) for _ in range(50)])
        for _ in range(4)
    ]
    for w in workers:
        w.start()
    for w in workers:
        w.join()
    session = store.session("s")
    assert session.current_thought == 200
    assert session.version == 200


def test_compare_and_swap_missing_session():
    with pytest.raises(LookupError, match="session nope not found"):
        SessionStore().compare_and_swap("nope", lambda s: s)


def test_to_json_field_names():
    data = ThinkingSession(id="s", problem="p", estimated_total=4).to_json()
    assert data["estimatedTotal"] == 4
    assert data["currentThought"] == 0
    assert "branches" not in data
    assert data["status"] == "active"
    assert "lastActivity" in data


def test_rand_text_alphabet():
    text = rand_text()
    assert len(text) == 26
    assert set(text) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZ234567")
    assert rand_text() != text or rand_text() != text