"""提示词约定。

- build_instruction: 开启 explain_changes 时，在系统提示词后追加一段固定要求，
  让模型在正文之后用分隔符开启一个修改说明小节。
- split_output: 按分隔符把模型输出拆成 (正文, 说明)。

分隔符只是一个字符串约定，模型也可能自己输出它，因此只按第一次出现拆分。
"""

from typing import Optional, Tuple


EXPLANATION_DELIMITER = "---EXPLANATION---"

EXPLAIN_CHANGES_SUFFIX = (
    "\n\nIMPORTANT: After the main response, add a section that starts with "
    f"'{EXPLANATION_DELIMITER}' and explain the changes you made. "
    "The explanation must come after the main response."
)


def build_instruction(instruction: str, explain_changes: bool) -> str:
    if not explain_changes:
        return instruction
    return f"{instruction}{EXPLAIN_CHANGES_SUFFIX}"


def build_user_input(prefix: str, selected_text: str) -> str:
    return f"{prefix}{selected_text}"


def split_output(raw: str, explain_changes: bool) -> Tuple[str, Optional[str]]:
    """返回 (main, explanation)；不需要说明或没有分隔符时 explanation 为 None。"""

    text = raw or ""
    if explain_changes and EXPLANATION_DELIMITER in text:
        main, explanation = text.split(EXPLANATION_DELIMITER, 1)
        return main.strip(), explanation.strip()
    return text.strip(), None
