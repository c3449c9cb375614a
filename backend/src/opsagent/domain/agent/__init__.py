"""Agent orchestration: model selection, tools, confirmation, QA and the loop."""
