"""用模型自带的 chat template 渲染提示词。

GGUF 文件在元数据 tokenizer.chat_template 中携带 Jinja 模板；没有模板时退回 ChatML。
"""

from typing import Any, Dict, List, Sequence

from jinja2 import TemplateError
from jinja2.sandbox import ImmutableSandboxedEnvironment

from action_core.domain.models import ChatMessage


CHAT_TEMPLATE_KEY = "tokenizer.chat_template"

CHATML_TEMPLATE = (
    "{% for message in messages %}"
    "{{ '<|im_start|>' + message['role'] + '\\n' + message['content'] + '<|im_end|>' + '\\n' }}"
    "{% endfor %}"
    "{% if add_generation_prompt %}{{ '<|im_start|>assistant\\n' }}{% endif %}"
)


def _raise_exception(message: str) -> None:
    raise TemplateError(message)


class ChatTemplate:
    def __init__(self, template: str, bos_token: str = "", eos_token: str = ""):
        env = ImmutableSandboxedEnvironment(trim_blocks=True, lstrip_blocks=True)
        self._template = env.from_string(template)
        self.bos_token = bos_token
        self.eos_token = eos_token

    @classmethod
    def for_model(cls, model: Any) -> "ChatTemplate":
        metadata: Dict[str, str] = getattr(model, "metadata", None) or {}
        template = metadata.get(CHAT_TEMPLATE_KEY) or CHATML_TEMPLATE
        return cls(
            template,
            bos_token=_token_text(model, model.token_bos()),
            eos_token=_token_text(model, model.token_eos()),
        )

    def render(self, messages: Sequence[ChatMessage], include_bos: bool = True) -> str:
        """渲染消息列表并追加 assistant 生成提示。

        include_bos=False 用于续写已有会话：上下文里已经有 BOS，不能再插一个。
        """

        payload: List[Dict[str, str]] = [{"role": m.role, "content": m.content} for m in messages]
        return self._template.render(
            messages=payload,
            bos_token=self.bos_token if include_bos else "",
            eos_token=self.eos_token,
            add_generation_prompt=True,
            raise_exception=_raise_exception,
        )


def _token_text(model: Any, token: int) -> str:
    if token is None or token < 0:
        return ""
    return model.detokenize([token], special=True).decode("utf-8", errors="ignore")
