"""
LLM (Large Language Model) initialisation. The assistant is optional.
"""

import os
import sys
from typing import Optional

from langchain_openai import ChatOpenAI

from clinicflow.config import MODEL_NAME


def init_llm() -> Optional[ChatOpenAI]:
    """Return a ChatOpenAI instance, or None when no OPENAI_API_KEY is configured."""
    if not os.getenv("OPENAI_API_KEY"):
        print("[WARN] OPENAI_API_KEY is not set; clinical assistant disabled.", file=sys.stderr)
        return None
    llm = ChatOpenAI(model=MODEL_NAME, temperature=0)
    print(f"[init] Using LLM model: {MODEL_NAME}")
    return llm
