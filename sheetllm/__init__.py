"""
SheetLLM - LLM batch operations for spreadsheet data

Runs chat-completion backed operations over tabular data for a browser
spreadsheet editor: inference, LLM-judge evaluation and data augmentation.

Submodules:
- config: Layered configuration (arguments, environment, files, defaults)
- connector: Provider adapters (OpenAI, generic bearer hosts, two-step OAuth)
- tasker: Operation requests, session and batch orchestration
  - data_stage: Chunked execution, row executors and schema reconciliation
- server: Flask ``/llm`` endpoint
"""

__version__ = "0.1.0"

from .config import Config, load_config
