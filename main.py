#!/usr/bin/env python3
"""
SheetLLM - Main Entry Point

Usage:
    python main.py --serve                      # Start the /llm server
    python main.py --action inference --data rows.json --model gpt-4o-mini --user-input question
    python main.py --list-providers             # List provider kinds and loaded credentials
    python main.py --show-config                # Show the resolved configuration

Environment Variables:
    SHEETLLM_<SECTION>__<KEY>: Override any configuration key (e.g. SHEETLLM_BATCH__SIZE=20)
    OPENAI_API_KEY: OpenAI token used by the command line
"""

import sys

from sheetllm.cli import main

if __name__ == "__main__":
    sys.exit(main())
