"""Minimal demonstration of a one-shot action and a windowed refinement loop."""

import sys

from action_core.api.service import init_service, list_history, run_action
from action_core.domain.models import ActionDefinition, NotificationType


class ConsoleText:
    def __init__(self, text: str):
        self.text = text

    def get_selected_text(self):
        return self.text

    def paste_text(self, text):
        print("Pasted:", text)


class ConsoleWindow:
    def show_result(self, data):
        print(f"[{data.action_name} via {data.provider_label}]")
        print(data.main_content)
        if data.explanation_content:
            print("Why:", data.explanation_content)
        refinement = input("Refine (empty to close): ").strip()
        return refinement or None


class ConsoleNotifier:
    def notify(self, message, severity):
        stream = sys.stderr if severity == NotificationType.ERROR else sys.stdout
        print(f"({severity.value}) {message}", file=stream)


if __name__ == "__main__":
    selected = "their going to the libary tomorow"
    init_service(ConsoleText(selected), ConsoleWindow(), ConsoleNotifier())
    proofread = ActionDefinition(
        name="Proofread",
        instruction="Correct spelling and grammar. Output only the corrected text.",
        explain_changes=True,
    )
    print(run_action(proofread))
    print(run_action(proofread, force_open_in_window=True))
    print(list_history()[:1])
