import threading

import pytest

from action_core.domain.exceptions import AllProvidersFailed, NoProviderAvailable
from action_core.domain.models import (
    ActionDefinition,
    AiResponse,
    ExecutionRequest,
    NotificationType,
    ProviderKind,
    ProviderSettings,
)
from action_core.flows.orchestrator import ConversationOrchestrator
from action_core.local import LocalInferenceEngine, LocalModelManager, LocalSessionRegistry
from action_core.providers.registry import ProviderRegistry

from fake_llama import FakeLlama, local_settings, model_file


class FakeProvider:
    def __init__(self, name, kind=ProviderKind.CLOUD, replies=None, error=None):
        self.name = name
        self.kind = kind
        self.replies = list(replies or ["result"])
        self.error = error
        self.transcripts = []

    def generate_response(self, transcript, cancel_event=None, session_id=None):
        self.transcripts.append([(m.role, m.content) for m in transcript])
        if self.error is not None:
            raise self.error
        text = self.replies.pop(0) if self.replies else "result"
        return AiResponse(text=text, prompt_tokens=3, completion_tokens=2, model_label=f"{self.name}-model")


class SessionProvider(FakeProvider):
    def __init__(self, *a, **kw):
        super().__init__(*a, **kw)
        self.started = []
        self.ended = []
        self.session_ids = []

    def start_session(self):
        sid = f"s{len(self.started) + 1}"
        self.started.append(sid)
        return sid

    def end_session(self, session_id):
        self.ended.append(session_id)

    def generate_response(self, transcript, cancel_event=None, session_id=None):
        self.session_ids.append(session_id)
        return super().generate_response(transcript, cancel_event, session_id)


class TextSinkStub:
    def __init__(self, text="selected text"):
        self.text = text
        self.pasted = []

    def get_selected_text(self):
        return self.text

    def paste_text(self, text):
        self.pasted.append(text)


class NotifierStub:
    def __init__(self):
        self.items = []

    def notify(self, message, severity):
        self.items.append((message, severity))

    def of(self, severity):
        return [m for m, s in self.items if s == severity]


class PresenterStub:
    def __init__(self, refinements=None):
        self.refinements = list(refinements or [])
        self.shown = []

    def show_result(self, data):
        self.shown.append(data)
        return self.refinements.pop(0) if self.refinements else None


class HistoryStub:
    def __init__(self, fail=False):
        self.fail = fail
        self.entries = []

    def add_history_entry(self, entry):
        if self.fail:
            raise OSError("read-only")
        self.entries.append(entry)

    def list_history(self):
        return list(self.entries)


def _orchestrator(providers, settings=None, text="selected text", refinements=None, history=None, max_rounds=10):
    settings = settings or ProviderSettings(primary_service_type="Cloud", fallback_service_type="None")
    sink = TextSinkStub(text)
    notifier = NotifierStub()
    presenter = PresenterStub(refinements)
    orchestrator = ConversationOrchestrator(
        registry=ProviderRegistry(providers),
        settings_source=lambda: settings,
        text_sink=sink,
        notifier=notifier,
        presenter=presenter,
        history=history,
        max_refinement_rounds=max_rounds,
        workers=2,
    )
    return orchestrator, sink, notifier, presenter


def _request(windowed=False, explain=False, override=None, force=False):
    action = ActionDefinition(
        name="Proofread", instruction="Fix grammar", prefix="Text: ", explain_changes=explain, open_in_window=windowed
    )
    return ExecutionRequest(action=action, force_open_in_window=force, provider_override=override)


def _sinks_fired(sink, presenter, notifier):
    return sum([bool(sink.pasted), bool(presenter.shown), bool(notifier.of(NotificationType.ERROR))])


def test_non_windowed_pastes_once():
    cloud = FakeProvider("Cloud", replies=["  Fixed.  "])
    orchestrator, sink, notifier, presenter = _orchestrator([cloud])
    run = orchestrator.execute(_request())

    assert sink.pasted == ["Fixed."]
    assert _sinks_fired(sink, presenter, notifier) == 1
    assert cloud.transcripts[0] == [("system", "Fix grammar"), ("user", "Text: selected text")]
    assert notifier.items[0] == ("Processing...", NotificationType.INFO)
    assert notifier.of(NotificationType.SUCCESS)[0].startswith("'Proofread' completed in ")
    assert run.rounds == 0


def test_windowed_shows_result_once_without_refinement():
    orchestrator, sink, notifier, presenter = _orchestrator([FakeProvider("Cloud")])
    orchestrator.execute(_request(force=True))
    assert len(presenter.shown) == 1
    assert presenter.shown[0].action_name == "Proofread"
    assert presenter.shown[0].provider_label == "Cloud-model"
    assert _sinks_fired(sink, presenter, notifier) == 1


@pytest.mark.parametrize("text", ["", "   ", None])
def test_blank_input_reports_error_only(text):
    cloud = FakeProvider("Cloud")
    orchestrator, sink, notifier, presenter = _orchestrator([cloud], text=text)
    orchestrator.execute(_request())
    assert notifier.of(NotificationType.ERROR) == ["No text selected or clipboard is empty."]
    assert _sinks_fired(sink, presenter, notifier) == 1
    assert cloud.transcripts == []


def test_provider_error_is_reported_once_with_short_message():
    cloud = FakeProvider("Cloud", error=AllProvidersFailed(message="All configured cloud providers failed."))
    orchestrator, sink, notifier, presenter = _orchestrator([cloud])
    orchestrator.execute(_request(windowed=True))
    assert notifier.of(NotificationType.ERROR) == ["All configured cloud providers failed."]
    assert _sinks_fired(sink, presenter, notifier) == 1


def test_unexpected_error_does_not_leak_details():
    cloud = FakeProvider("Cloud", error=KeyError("secret internals"))
    orchestrator, _, notifier, _ = _orchestrator([cloud])
    orchestrator.execute(_request())
    [message] = notifier.of(NotificationType.ERROR)
    assert "secret" not in message


def test_selection_prefers_registered_override():
    cloud, local = FakeProvider("Cloud"), FakeProvider("Local", kind=ProviderKind.LOCAL)
    orchestrator, _, _, _ = _orchestrator([cloud, local])
    assert orchestrator.select_provider("local") is local
    assert orchestrator.select_provider("Unknown") is cloud
    assert orchestrator.select_provider(None) is cloud


def test_selection_falls_back_with_notice():
    local = FakeProvider("Local", kind=ProviderKind.LOCAL)
    settings = ProviderSettings(primary_service_type="Cloud", fallback_service_type="Local")
    orchestrator, _, notifier, _ = _orchestrator([local], settings=settings)
    assert orchestrator.select_provider() is local
    assert notifier.of(NotificationType.WARNING) == ["Primary provider 'Cloud' not available. Using fallback."]


def test_selection_fails_when_nothing_registered():
    settings = ProviderSettings(primary_service_type="Cloud", fallback_service_type="None")
    orchestrator, sink, notifier, presenter = _orchestrator([FakeProvider("Local")], settings=settings)
    with pytest.raises(NoProviderAvailable):
        orchestrator.select_provider()
    orchestrator.execute(_request())
    assert notifier.of(NotificationType.ERROR) == ["No valid AI provider could be found or configured."]
    assert _sinks_fired(sink, presenter, notifier) == 1


def test_explain_changes_splits_output():
    cloud = FakeProvider("Cloud", replies=["Hello---EXPLANATION---World"])
    orchestrator, _, _, presenter = _orchestrator([cloud])
    orchestrator.execute(_request(windowed=True, explain=True))
    assert presenter.shown[0].main_content == "Hello"
    assert presenter.shown[0].explanation_content == "World"
    assert "---EXPLANATION---" in cloud.transcripts[0][0][1]


def test_three_refinements_grow_transcript_to_eight():
    cloud = FakeProvider("Cloud", replies=["r1", "r2", "r3", "r4"])
    orchestrator, _, _, presenter = _orchestrator([cloud], refinements=["shorter", "formal", "in French"])
    run = orchestrator.execute(_request(windowed=True))

    assert run.rounds == 3
    assert len(run.transcript) == 8
    assert [m.role for m in run.transcript] == ["system", "user", "assistant", "user", "assistant", "user", "assistant", "user"]
    assert cloud.transcripts[1][-2:] == [("assistant", "r1"), ("user", "shorter")]
    assert [d.main_content for d in presenter.shown] == ["r1", "r2", "r3", "r4"]


def test_blank_refinement_closes_the_loop():
    cloud = FakeProvider("Cloud")
    orchestrator, _, _, presenter = _orchestrator([cloud], refinements=["   "])
    run = orchestrator.execute(_request(windowed=True))
    assert run.rounds == 0
    assert len(presenter.shown) == 1


def test_windowed_session_is_created_lazily_reused_and_released():
    local = SessionProvider("Local", kind=ProviderKind.LOCAL, replies=["a", "b", "c"])
    settings = ProviderSettings(primary_service_type="Local")
    orchestrator, _, _, _ = _orchestrator([local], settings=settings, refinements=["again", "more"])
    orchestrator.execute(_request(windowed=True))
    assert local.started == ["s1"]
    assert local.session_ids == ["s1", "s1", "s1"]
    assert local.ended == ["s1"]


def test_session_released_when_generation_fails():
    local = SessionProvider("Local", kind=ProviderKind.LOCAL, error=RuntimeError("decode failed"))
    orchestrator, _, notifier, _ = _orchestrator([local], settings=ProviderSettings(primary_service_type="Local"))
    orchestrator.execute(_request(windowed=True))
    assert local.ended == ["s1"]
    assert len(notifier.of(NotificationType.ERROR)) == 1


def test_non_windowed_local_call_uses_no_persistent_session():
    local = SessionProvider("Local", kind=ProviderKind.LOCAL)
    orchestrator, sink, _, _ = _orchestrator([local], settings=ProviderSettings(primary_service_type="Local"))
    orchestrator.execute(_request())
    assert local.started == []
    assert local.session_ids == [None]
    assert sink.pasted == ["result"]


def test_history_failure_does_not_abort_result():
    history = HistoryStub(fail=True)
    orchestrator, sink, notifier, _ = _orchestrator([FakeProvider("Cloud")], history=history)
    orchestrator.execute(_request())
    assert sink.pasted == ["result"]
    assert notifier.of(NotificationType.WARNING) == ["Failed to log history"]
    assert notifier.of(NotificationType.ERROR) == []


def test_history_entry_fields():
    history = HistoryStub()
    orchestrator, _, _, _ = _orchestrator([FakeProvider("Cloud", replies=["done"])], history=history)
    orchestrator.execute(_request())
    [entry] = history.entries
    assert entry.action_name == "Proofread"
    assert entry.provider_label == "Cloud"
    assert entry.model_label == "Cloud-model"
    assert entry.input_text == "selected text"
    assert entry.output_text == "done"
    assert (entry.prompt_tokens, entry.completion_tokens) == (3, 2)
    assert entry.latency_ms >= 0


def test_cancelled_with_no_output_still_pastes_once():
    cancel = threading.Event()
    cancel.set()
    cloud = FakeProvider("Cloud", replies=[""])
    orchestrator, sink, notifier, presenter = _orchestrator([cloud])
    run = orchestrator.execute(_request(), cancel_event=cancel)
    assert sink.pasted == [""]
    assert run.delivered
    assert _sinks_fired(sink, presenter, notifier) == 1
    assert notifier.of(NotificationType.ERROR) == []
    assert ("Cancelled", NotificationType.INFO) in notifier.items


def test_cancelled_windowed_with_no_output_shows_empty_result():
    cancel = threading.Event()
    cancel.set()
    cloud = FakeProvider("Cloud", replies=[""])
    orchestrator, sink, notifier, presenter = _orchestrator([cloud], refinements=["ignored"])
    run = orchestrator.execute(_request(windowed=True), cancel_event=cancel)
    assert [d.main_content for d in presenter.shown] == [""]
    assert sink.pasted == []
    assert run.rounds == 0
    assert _sinks_fired(sink, presenter, notifier) == 1


def test_refinement_limit_warns_instead_of_dropping_silently():
    cloud = FakeProvider("Cloud", replies=["r1", "r2", "r3"])
    orchestrator, _, notifier, presenter = _orchestrator(
        [cloud], refinements=["shorter", "formal", "in French"], max_rounds=2
    )
    run = orchestrator.execute(_request(windowed=True))
    assert run.rounds == 2
    assert len(presenter.shown) == 3
    assert notifier.of(NotificationType.WARNING) == [
        "Refinement limit of 2 rounds reached. Run the action again to continue."
    ]
    assert notifier.of(NotificationType.ERROR) == []


def test_submit_runs_on_worker_thread():
    orchestrator, sink, _, _ = _orchestrator([FakeProvider("Cloud")])
    run = orchestrator.submit(_request()).result(timeout=5)
    orchestrator.shutdown()
    assert run.main_output == "result"
    assert sink.pasted == ["result"]


def test_available_actions_filters_by_application():
    orchestrator, _, notifier, _ = _orchestrator([FakeProvider("Cloud")])
    actions = [
        ActionDefinition(name="Code", application_context=("code.exe",), sort_order=2),
        ActionDefinition(name="Global", sort_order=1),
        ActionDefinition(name="Mail", application_context=("outlook.exe",), sort_order=0),
    ]
    assert [a.name for a in orchestrator.available_actions(actions, "Code.EXE")] == ["Global", "Code"]
    assert orchestrator.available_actions(actions[2:], "code.exe") == []
    assert notifier.of(NotificationType.WARNING)


def test_smart_paste_runs_action_or_reports_missing():
    orchestrator, sink, notifier, _ = _orchestrator([FakeProvider("Cloud")])
    assert orchestrator.execute_smart_paste(None) is None
    assert notifier.of(NotificationType.ERROR) == ["The configured Smart Paste action was not found."]

    orchestrator.execute_smart_paste(ActionDefinition(name="Quick fix", instruction="fix"))
    assert sink.pasted == ["result"]


def test_end_to_end_with_local_engine(tmp_path):
    settings = local_settings(model_file(tmp_path))
    manager = LocalModelManager(model_factory=lambda **p: FakeLlama(replies=["first", "second"], **p))
    sessions = LocalSessionRegistry(manager)
    engine = LocalInferenceEngine(manager, sessions, lambda: settings)
    orchestrator, _, _, presenter = _orchestrator([engine], settings=settings, refinements=["shorter"])

    run = orchestrator.execute(_request(windowed=True))

    assert [d.main_content for d in presenter.shown] == ["first", "second"]
    assert len(run.transcript) == 4
    first_prompt, second_prompt = manager.model.prompts
    assert "Fix grammar" in first_prompt
    assert "Fix grammar" not in second_prompt and "shorter" in second_prompt
    # 窗口关闭后会话被释放
    assert len(sessions) == 0
