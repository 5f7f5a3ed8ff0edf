from crkd.conversation import ConversationBuffer
from crkd.models import Phase, PromptArgs
from crkd.phases import (
    CONTINUATION_MESSAGE,
    PhaseController,
    PhaseManager,
    discovery_prompt,
    execute_prompt,
    strategy_prompt,
)


def _controller(conversation=None) -> PhaseController:
    manager = PhaseManager("disc-model", "strat-model", "exec-model")
    return PhaseController(
        manager,
        conversation if conversation is not None else ConversationBuffer(),
        project_info="Project: demo",
        environment_details="OS: linux",
    )

# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

def test_prompts_wrap_rules_in_phase_block():
    args = PromptArgs(message="Fix the login bug", project_info="Project: demo", environment_details="OS: linux")
    for render, heading in [
        (discovery_prompt, "## Discovery Phase"),
        (strategy_prompt, "## Strategy Phase"),
        (execute_prompt, "## Execute Phase"),
    ]:
        text = render(args)
        assert text.startswith("Fix the login bug")
        assert heading in text
        assert "<phase_prompt>" in text and "</phase_prompt>" in text
        assert "Project: demo" in text
        assert "OS: linux" in text

def test_message_survives_phase_cleanup():
    buffer = ConversationBuffer()
    buffer.add_message("user", discovery_prompt(PromptArgs(message="Fix the login bug")))
    buffer.cleanup_phase_content()
    assert buffer.get_messages()[0].content.strip() == "Fix the login bug"

# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

def test_manager_starts_in_discovery():
    manager = PhaseManager("disc-model", "strat-model", "exec-model")
    assert manager.current_phase == Phase.DISCOVERY
    assert manager.active_model == "disc-model"
    assert manager.current_config().model == "disc-model"
    assert manager.is_terminal() is False

def test_manager_stops_at_execute():
    manager = PhaseManager("disc-model", "strat-model", "exec-model")
    assert manager.next_phase() == Phase.STRATEGY
    assert manager.next_phase() == Phase.EXECUTE
    assert manager.next_phase() == Phase.EXECUTE
    assert manager.is_terminal() is True

    manager.reset()
    assert manager.current_phase == Phase.DISCOVERY
    assert manager.active_model == "disc-model"

# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

def test_transition_to_strategy_cleans_phase_content():
    buffer = ConversationBuffer()
    controller = _controller(buffer)
    buffer.add_message("user", controller.render_prompt("Fix the login bug"))
    buffer.add_message("assistant", "The bug is in auth.py")

    transition = controller.transition_to_next_phase()

    assert transition.regenerate is True
    assert transition.phase == Phase.STRATEGY
    assert transition.selected_model == "strat-model"
    assert transition.prompt.startswith(CONTINUATION_MESSAGE)
    assert "## Strategy Phase" in transition.prompt
    assert controller.manager.active_model == "strat-model"
    assert all("<phase_prompt>" not in m.content for m in buffer.get_messages())

def test_transition_through_all_phases():
    controller = _controller()
    phases = [controller.transition_to_next_phase().phase for _ in range(2)]
    assert phases == [Phase.STRATEGY, Phase.EXECUTE]
    assert controller.manager.active_model == "exec-model"

def test_transition_in_terminal_phase_is_noop():
    buffer = ConversationBuffer()
    controller = _controller(buffer)
    controller.transition_to_next_phase()
    controller.transition_to_next_phase()
    buffer.add_message("user", "<phase_prompt>execute rules</phase_prompt> keep me")

    transition = controller.transition_to_next_phase()

    assert transition.regenerate is False
    assert transition.phase == Phase.EXECUTE
    assert transition.selected_model == "exec-model"
    assert controller.manager.current_phase == Phase.EXECUTE
    # nothing is cleaned up when the phase does not change
    assert "<phase_prompt>" in buffer.get_messages()[0].content

def test_terminal_transition_keeps_escalated_model():
    controller = _controller()
    controller.transition_to_next_phase()
    controller.transition_to_next_phase()
    controller.manager.set_active_model("anthropic/claude-3.5-sonnet:beta")

    transition = controller.transition_to_next_phase()
    assert transition.selected_model == "anthropic/claude-3.5-sonnet:beta"
