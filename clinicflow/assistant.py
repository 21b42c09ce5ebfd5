"""
Optional clinical assistant – short AI case summary and its spoken version.

Neither service is needed by the workflow: when the LLM or speech engine is
missing the session simply reports that the assistant is unavailable.
"""

import asyncio
import os
import sys
from typing import Callable, List, Optional

import edge_tts
from langchain_core.messages import HumanMessage, SystemMessage

from clinicflow.config import TTS_CACHE_DIR, TTS_VOICE
from clinicflow.models import MedicationItem, Patient, generate_id


# ── AI summary ───────────────────────────────────────────────────────

def summarize_case(llm, patient: Patient, diagnosis: str, medications: List[MedicationItem]) -> str:
    """Ask the LLM for a very short summary of the case being charted."""
    med_names = ", ".join(f"{m.name} ({m.quantity})" for m in medications) or "none"

    system = SystemMessage(
        content=(
            "You are a clinical assistant in a diabetes outpatient clinic.\n"
            "Write a very short medical summary of the case in Arabic, at most 100 words.\n"
            "Mention whether the insulin dose seems appropriate for the patient's age.\n"
            "No markdown."
        )
    )
    human = HumanMessage(
        content=(
            f"Patient: {patient.name}, Age: {patient.age}.\n"
            f"Diagnosis: {diagnosis}.\n"
            f"Medications: {med_names}.\n"
        )
    )
    resp = llm.invoke([system, human])
    return resp.content.strip()


# ── Speech ───────────────────────────────────────────────────────────

def synthesize_speech(text: str, out_path: str, voice: str = TTS_VOICE) -> str:
    """Render *text* to an mp3 file with edge-tts and return its path."""
    out_dir = os.path.dirname(out_path)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)

    async def _run():
        comm = edge_tts.Communicate(text=text, voice=voice)
        await comm.save(out_path)

    asyncio.run(_run())
    return out_path


class ClinicalAssistant:
    """The optional AI collaborators shared by every session."""

    def __init__(
        self,
        llm=None,
        speaker: Optional[Callable[[str, str], str]] = synthesize_speech,
        cache_dir: str = TTS_CACHE_DIR,
    ):
        self.llm = llm
        self.speaker = speaker
        self.cache_dir = cache_dir

    @property
    def can_summarize(self) -> bool:
        return self.llm is not None

    @property
    def can_speak(self) -> bool:
        return self.speaker is not None

    def open_session(self) -> "AssistantSession":
        return AssistantSession(self)


class AssistantSession:
    """Summary text and generated audio held for one signed-in session."""

    def __init__(self, assistant: ClinicalAssistant):
        self.assistant = assistant
        self.summary = ""
        self.audio_path: Optional[str] = None
        self.playing = False
        self.released = False

    def summarize(self, patient: Patient, diagnosis: str, medications: List[MedicationItem]) -> Optional[str]:
        """Generate a fresh summary. Returns None when no LLM is configured or the call fails."""
        self.reset()
        if not self.assistant.can_summarize:
            return None
        try:
            self.summary = summarize_case(self.assistant.llm, patient, diagnosis, medications)
        except Exception as e:
            print(f"[WARN] AI summary generation failed: {e}", file=sys.stderr)
            return None
        return self.summary

    def toggle_speech(self) -> Optional[str]:
        """Start reading the summary aloud, or stop it if it is already playing."""
        if self.playing:
            self.playing = False
            return None
        if not self.summary or not self.assistant.can_speak:
            return None
        if self.audio_path is None:
            out_path = os.path.join(self.assistant.cache_dir, f"summary_{generate_id()}.mp3")
            try:
                self.audio_path = self.assistant.speaker(self.summary, out_path)
            except Exception as e:
                print(f"[WARN] Speech synthesis failed: {e}", file=sys.stderr)
                return None
        self.playing = True
        return self.audio_path

    def reset(self) -> None:
        """Drop the summary and any generated audio."""
        self.playing = False
        self.summary = ""
        if self.audio_path and os.path.exists(self.audio_path):
            os.remove(self.audio_path)
        self.audio_path = None

    def release(self) -> None:
        """Stop playback and free everything held by this session."""
        self.reset()
        self.released = True
