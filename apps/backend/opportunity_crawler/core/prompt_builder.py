"""
Structured prompt builder for LLM calls.

Components are rendered as tagged blocks (<instruction>, <rules>, ...) in
the order they were added. Instructions and rules are merged into a single
bulleted block each.
"""

from typing import Any, Dict, List, Optional


class PromptComponent:
    """A single block of the prompt"""

    def __init__(self, kind: str, content: str, options: Optional[Dict[str, Any]] = None):
        self.kind = kind
        self.content = content
        self.options = options or {}

    def __repr__(self):
        return f"PromptComponent(kind={self.kind}, length={len(self.content)})"


class LLMPromptBuilder:
    """
    Chainable builder for LLM prompts.

    Example:
        prompt = (
            LLMPromptBuilder()
            .add_instruction("Extract the opportunities.")
            .add_custom_block("content", markdown)
            .add_rule("Do not guess.")
            .compose()
        )
    """

    def __init__(self):
        self.components: List[PromptComponent] = []
        self.global_context: Dict[str, Any] = {}
        self.user_inputs: Dict[str, Any] = {}

    def _find(self, kind: str) -> Optional[PromptComponent]:
        for component in self.components:
            if component.kind == kind:
                return component
        return None

    def define_context(self, context: Dict[str, Any]) -> "LLMPromptBuilder":
        self.global_context.update(context)
        return self

    def add_plain_text(self, content: str) -> "LLMPromptBuilder":
        self.components.append(PromptComponent("raw", content))
        return self

    def add_instruction(self, instruction: str, importance: Optional[str] = None) -> "LLMPromptBuilder":
        """Add an instruction; later instructions are appended as bullets."""
        existing = self._find("instruction")
        if existing:
            existing.content += f"\n- {instruction}"
            return self
        self.components.append(PromptComponent("instruction", instruction, {"importance": importance}))
        return self

    def add_additional_context(self, context: str) -> "LLMPromptBuilder":
        self.components.append(PromptComponent("context", context))
        return self

    def add_rule(self, rule: str) -> "LLMPromptBuilder":
        existing = self._find("rule")
        if existing:
            existing.content += f"\n- {rule}"
            return self
        self.components.append(PromptComponent("rule", rule))
        return self

    def add_illustration(self, illustration: str, explanation: Optional[str] = None) -> "LLMPromptBuilder":
        self.components.append(PromptComponent("illustration", illustration, {"explanation": explanation}))
        return self

    def add_use_case(self, scenario: str, expected_outcome: Optional[str] = None) -> "LLMPromptBuilder":
        self.components.append(PromptComponent("use_case", scenario, {"expected_outcome": expected_outcome}))
        return self

    def add_special_case(self, special_case: str, handling: str) -> "LLMPromptBuilder":
        self.components.append(PromptComponent("special_case", special_case, {"handling": handling}))
        return self

    def add_table(self, headers: List[str], rows: List[List[str]], label: Optional[str] = None) -> "LLMPromptBuilder":
        """Add a markdown table."""
        lines = []
        if label:
            lines.append(f"**{label}**\n")
        lines.append("| " + " | ".join(headers) + " |")
        lines.append("| " + " | ".join("---" for _ in headers) + " |")
        for row in rows:
            lines.append("| " + " | ".join(str(cell) for cell in row) + " |")
        self.components.append(PromptComponent("table", "\n".join(lines)))
        return self

    def add_custom_block(self, label: str, content: str, **options) -> "LLMPromptBuilder":
        self.components.append(PromptComponent("custom", content, {"label": label, **options}))
        return self

    def define_user_inputs(self, inputs: Dict[str, Any]) -> "LLMPromptBuilder":
        self.user_inputs.update(inputs)
        return self

    def compose(self) -> str:
        parts = []

        if self.global_context:
            context = "\n".join(f"{key}: {value}" for key, value in self.global_context.items())
            parts.append(f"<global_context>\n{context}\n</global_context>\n\n")

        parts.append("\n\n".join(self._render(component) for component in self.components))

        if self.user_inputs:
            inputs = "\n".join(f"{key}: {value}" for key, value in self.user_inputs.items())
            parts.append(f"\n\n<user_inputs>\n{inputs}\n</user_inputs>")

        return "".join(parts)

    def _render(self, component: PromptComponent) -> str:
        kind = component.kind
        content = component.content
        options = component.options

        if kind == "raw":
            return content
        if kind == "instruction":
            prefix = options.get("importance") or ""
            return f"<instruction>\n{prefix} {content}\n</instruction>"
        if kind == "context":
            return f"<context>\n{content}\n</context>" if content else "N/A"
        if kind == "rule":
            return f"<rules>\n{content}\n</rules>"
        if kind == "illustration":
            text = f"<illustration>\n{content}"
            if options.get("explanation"):
                text += f"\n*{options['explanation']}*"
            return f"{text}\n</illustration>"
        if kind == "use_case":
            text = f"<use_case>\n{content}"
            if options.get("expected_outcome"):
                text += f"\n**Expected:** {options['expected_outcome']}"
            return f"{text}\n</use_case>"
        if kind == "special_case":
            return f"<special_case>\n{content}\n**Handling:** {options.get('handling')}\n</special_case>"
        if kind == "custom":
            tag = options["label"].lower().replace(" ", "_")
            return f"<{tag}>\n{content}\n</{tag}>"
        if kind == "table":
            return f"<table>\n{content}\n</table>"
        return ""
