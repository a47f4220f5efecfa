from __future__ import annotations

import allure
import pytest

from agent_crew.engine.executors.collaboration import (
    DISCUSSION_COMPLETE,
    MODERATOR_PROMPT,
    NO_DISCUSSION_OUTPUT,
    CollaborationExecutor,
    Contribution,
    should_terminate,
    synthesize_output,
)
from agent_crew.engine.models import (
    CollaborationConfig,
    MessageType,
    SpeakerSelection,
    TeamMode,
    TeamRunStatus,
    TerminationCondition,
)

pytestmark = [
    allure.epic("Team Execution"),
    allure.feature("Collaboration Mode"),
]


def _executor(harness) -> CollaborationExecutor:
    return CollaborationExecutor(
        repository=harness.repository,
        llm=harness.llm,
        ledger=harness.ledger,
    )


def _said(agent_id: str, content: str, turn: int) -> Contribution:
    return Contribution(
        agent_id=agent_id,
        agent_name=agent_id.upper(),
        content=content,
        turn_index=turn,
    )


def test_round_robin_runs_to_max_turns(harness) -> None:
    alice = harness.add_agent("Alice", description="Optimist")
    bob = harness.add_agent("Bob", description="Skeptic")
    team = harness.add_team(
        TeamMode.COLLABORATION,
        {"agent_ids": [alice.id, bob.id], "max_turns": 3},
    )
    harness.provider.script("model-alice", "Tides are fascinating.", "Still fascinating.")
    harness.provider.script("model-bob", "They are just gravity.")
    run = harness.claim_run(team)

    status = _executor(harness).execute(run, team, runner_id=harness.runner_id)

    assert status is TeamRunStatus.COMPLETED
    stored = harness.repository.get_team_run(run.id)
    assert stored.current_step_idx == 2
    assert stored.output.startswith(
        "## Collaboration Result\n\n### Final Contribution (Alice)\nStill fascinating.",
    )
    assert "### Full Discussion Thread (3 turns)" in stored.output

    bob_call = harness.provider.calls_for("model-bob")[0]
    assert "**Alice** (Turn 1):\nTides are fascinating." in bob_call.user_prompt
    assert "(Turn 2 of 3). Respond as Bob." in bob_call.user_prompt
    assert "  - Alice: Optimist" in bob_call.system_prompt
    assert 'include the phrase "I agree"' in bob_call.system_prompt
    assert "## Your Role" in harness.provider.calls_for("model-alice")[0].user_prompt

    messages = harness.repository.list_team_messages(run_id=run.id)
    assert [message.message_type for message in messages] == [
        MessageType.SYSTEM,
        MessageType.DISCUSSION,
        MessageType.DISCUSSION,
        MessageType.DISCUSSION,
        MessageType.SYSTEM,
    ]
    assert messages[-1].content == "Collaboration completed after 3 turns."
    records = harness.repository.list_usage_records(team_run_id=run.id)
    assert [record.step_name for record in records] == [
        "Turn 1: Alice",
        "Turn 2: Bob",
        "Turn 3: Alice",
    ]


def test_consensus_stops_discussion_early(harness) -> None:
    alice = harness.add_agent("Alice")
    bob = harness.add_agent("Bob")
    team = harness.add_team(
        TeamMode.COLLABORATION,
        {
            "agent_ids": [alice.id, bob.id],
            "max_turns": 10,
            "termination_condition": "consensus",
        },
    )
    harness.provider.script("model-alice", "Let's publish the tide tables.")
    harness.provider.script("model-bob", "I agree, publish them.")
    run = harness.claim_run(team)

    _executor(harness).execute(run, team, runner_id=harness.runner_id)

    assert len(harness.provider.calls) == 2
    assert "(2 turns)" in harness.repository.get_team_run(run.id).output


def test_facilitator_selection_and_decision(harness) -> None:
    host = harness.add_agent("Host")
    alice = harness.add_agent("Alice")
    bob = harness.add_agent("Bob")
    team = harness.add_team(
        TeamMode.COLLABORATION,
        {
            "agent_ids": [host.id, alice.id, bob.id],
            "speaker_selection": "facilitator",
            "facilitator_agent_id": host.id,
            "termination_condition": "facilitator_decision",
            "max_turns": 3,
        },
    )
    harness.provider.script("model-host", "Opening remarks.", "Let's hear more.", bob.id)
    harness.provider.script("model-bob", "Here is my view.")
    run = harness.claim_run(team)

    status = _executor(harness).execute(run, team, runner_id=harness.runner_id)

    assert status is TeamRunStatus.COMPLETED
    assert [call.model for call in harness.provider.calls] == [
        "model-host",
        "model-host",
        "model-host",
        "model-bob",
    ]
    host_prompt = harness.provider.calls_for("model-host")[0].system_prompt
    assert DISCUSSION_COMPLETE in host_prompt
    assert harness.provider.calls_for("model-alice") == []
    records = harness.repository.list_usage_records(team_run_id=run.id)
    assert "speaker_selection" in [record.step_name for record in records]


def test_llm_select_uses_first_agent_as_moderator(harness) -> None:
    alice = harness.add_agent("Alice")
    bob = harness.add_agent("Bob")
    team = harness.add_team(
        TeamMode.COLLABORATION,
        {"agent_ids": [alice.id, bob.id], "speaker_selection": "llm_select", "max_turns": 1},
    )
    harness.provider.script("model-alice", f"Next speaker: {bob.id}")
    harness.provider.script("model-bob", "Bob speaks first.")
    run = harness.claim_run(team)

    _executor(harness).execute(run, team, runner_id=harness.runner_id)

    selection_call = harness.provider.calls_for("model-alice")[0]
    assert selection_call.system_prompt == MODERATOR_PROMPT
    assert "this is the opening turn" in selection_call.user_prompt
    assert "### Final Contribution (Bob)" in harness.repository.get_team_run(run.id).output


def test_llm_select_falls_back_to_round_robin(harness) -> None:
    alice = harness.add_agent("Alice")
    bob = harness.add_agent("Bob")
    team = harness.add_team(
        TeamMode.COLLABORATION,
        {"agent_ids": [alice.id, bob.id], "speaker_selection": "llm_select", "max_turns": 1},
    )
    harness.provider.script("model-alice", "nobody in particular", "Alice opens.")
    run = harness.claim_run(team)

    _executor(harness).execute(run, team, runner_id=harness.runner_id)

    assert harness.provider.calls_for("model-bob") == []
    assert "### Final Contribution (Alice)\nAlice opens." in (
        harness.repository.get_team_run(run.id).output
    )


def test_missing_participants_fail_run(harness) -> None:
    alice = harness.add_agent("Alice")
    team = harness.add_team(TeamMode.COLLABORATION, {"agent_ids": [alice.id, "ghost"]})
    run = harness.claim_run(team)

    status = _executor(harness).execute(run, team, runner_id=harness.runner_id)

    assert status is TeamRunStatus.FAILED
    assert harness.repository.get_team_run(run.id).error_message == (
        "Could not load at least 2 participating agents"
    )


@pytest.mark.parametrize(
    ("condition", "conversation", "turn", "expected"),
    [
        (TerminationCondition.MAX_TURNS, [], 4, True),
        (TerminationCondition.MAX_TURNS, [], 3, False),
        (TerminationCondition.CONSENSUS, [_said("a", "I agree", 0)], 0, False),
        (
            TerminationCondition.CONSENSUS,
            [_said("a", "maybe", 0), _said("b", "no", 1), _said("c", "I AGREE", 2)],
            2,
            False,
        ),
        (
            TerminationCondition.CONSENSUS,
            [_said("a", "i agree", 0), _said("b", "no", 1), _said("c", "I agree", 2)],
            2,
            True,
        ),
        (
            TerminationCondition.FACILITATOR_DECISION,
            [_said("a", f"Thanks. {DISCUSSION_COMPLETE}", 0), _said("b", "wait", 1)],
            1,
            True,
        ),
        (
            TerminationCondition.FACILITATOR_DECISION,
            [_said("b", DISCUSSION_COMPLETE, 0)],
            0,
            False,
        ),
    ],
)
def test_should_terminate(
    condition: TerminationCondition,
    conversation: list[Contribution],
    turn: int,
    expected: bool,
) -> None:
    config = CollaborationConfig(
        agent_ids=("a", "b", "c"),
        speaker_selection=SpeakerSelection.ROUND_ROBIN,
        max_turns=5,
        termination_condition=condition,
        facilitator_agent_id="a",
    )

    assert should_terminate(config, conversation, turn) is expected


def test_synthesize_output_without_turns() -> None:
    assert synthesize_output([]) == NO_DISCUSSION_OUTPUT


def test_cancellation_between_turns(harness, monkeypatch: pytest.MonkeyPatch) -> None:
    alice = harness.add_agent("Alice")
    bob = harness.add_agent("Bob")
    team = harness.add_team(
        TeamMode.COLLABORATION,
        {"agent_ids": [alice.id, bob.id], "max_turns": 4},
    )
    run = harness.claim_run(team)
    original = harness.provider.execute

    def cancel_after_bob(**kwargs):
        result = original(**kwargs)
        if kwargs["model"] == "model-bob":
            harness.repository.cancel_team_run(run_id=run.id, workspace_id=run.workspace_id)
        return result

    monkeypatch.setattr(harness.provider, "execute", cancel_after_bob)

    status = _executor(harness).execute(run, team, runner_id=harness.runner_id)

    assert status is TeamRunStatus.CANCELLED
    assert [call.model for call in harness.provider.calls] == ["model-alice", "model-bob"]
    stored = harness.repository.get_team_run(run.id)
    assert stored.status is TeamRunStatus.CANCELLED
    assert stored.output is None
    messages = harness.repository.list_team_messages(run_id=run.id)
    assert not any(message.content.startswith("Collaboration completed") for message in messages)


def test_stale_runner_stops_after_run_is_reclaimed(
    harness,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    alice = harness.add_agent("Alice")
    bob = harness.add_agent("Bob")
    team = harness.add_team(
        TeamMode.COLLABORATION,
        {"agent_ids": [alice.id, bob.id], "max_turns": 4},
    )
    run = harness.claim_run(team)
    original = harness.provider.execute
    successor: list[str] = []

    def reclaim_after_alice(**kwargs):
        result = original(**kwargs)
        if kwargs["model"] == "model-alice":
            successor.append(harness.hand_over_claims())
            assert harness.repository.claim_next_team_run(runner_id=successor[0]) is not None
        return result

    monkeypatch.setattr(harness.provider, "execute", reclaim_after_alice)

    status = _executor(harness).execute(run, team, runner_id=harness.runner_id)

    assert status is TeamRunStatus.RUNNING
    assert harness.provider.calls_for("model-bob") == []
    assert harness.repository.get_team_run(run.id).claimed_by_runner == successor[0]
    messages = harness.repository.list_team_messages(run_id=run.id)
    assert MessageType.DISCUSSION not in {message.message_type for message in messages}
