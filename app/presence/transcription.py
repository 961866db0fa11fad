import base64
import concurrent.futures
import json
import logging
import os
import shutil
import subprocess
import wave
from pathlib import Path
from typing import List, Optional, Protocol

from fastapi import HTTPException, UploadFile
from google.api_core.exceptions import GoogleAPIError
from google.cloud import speech
from google.oauth2 import service_account

from .constants import CHUNK_SIZE, MAX_UPLOAD_BYTES
from .errors import UpstreamError
from .models import TranscriptSource, WordTiming, duration_to_seconds


logger = logging.getLogger("uvicorn.error")

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
SAMPLE_RATE_HERTZ = 16000
FFMPEG_TIMEOUT_SECONDS = 120.0
# Inline audio limit for recognition requests; 16 kHz mono LINEAR16 fits about five minutes.
MAX_INLINE_AUDIO_BYTES = 10 * 1024 * 1024


class Transcriber(Protocol):
    def transcribe(self, media_path: Path, work_dir: Path) -> TranscriptSource:
        pass


async def write_upload_to_disk(
    upload: UploadFile,
    destination: Path,
    *,
    field_name: str = "media",
    max_size_bytes: int = MAX_UPLOAD_BYTES,
) -> int:
    total_bytes = 0
    destination.parent.mkdir(parents=True, exist_ok=True)

    with destination.open("wb") as output:
        while True:
            chunk = await upload.read(CHUNK_SIZE)
            if not chunk:
                break
            total_bytes += len(chunk)
            if total_bytes > max_size_bytes:
                raise HTTPException(
                    status_code=413,
                    detail=f"{field_name} is too large. Max size is {max_size_bytes} bytes.",
                )
            output.write(chunk)

    await upload.close()
    if total_bytes == 0:
        raise HTTPException(status_code=400, detail=f"{field_name} file is empty.")
    return total_bytes


def load_service_account_credentials() -> Optional[service_account.Credentials]:
    credentials_b64 = os.getenv("GOOGLE_APPLICATION_CREDENTIALS_B64", "").strip()
    credentials_json = os.getenv("GOOGLE_APPLICATION_CREDENTIALS_JSON", "").strip()
    credentials_path = os.getenv("GOOGLE_APPLICATION_CREDENTIALS", "").strip()

    if credentials_b64:
        padded = credentials_b64 + "=" * ((-len(credentials_b64)) % 4)
        try:
            info = json.loads(base64.b64decode(padded).decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as exc:
            raise UpstreamError(f"Invalid GOOGLE_APPLICATION_CREDENTIALS_B64: {exc}") from exc
        return service_account.Credentials.from_service_account_info(info, scopes=[CLOUD_PLATFORM_SCOPE])

    if credentials_json:
        try:
            info = json.loads(credentials_json)
        except json.JSONDecodeError as exc:
            raise UpstreamError(f"Invalid GOOGLE_APPLICATION_CREDENTIALS_JSON: {exc}") from exc
        return service_account.Credentials.from_service_account_info(info, scopes=[CLOUD_PLATFORM_SCOPE])

    if credentials_path:
        if not Path(credentials_path).exists():
            raise UpstreamError(
                f"GOOGLE_APPLICATION_CREDENTIALS points to a missing file: {credentials_path}"
            )
        # The client library picks the file up from the environment.
        return None

    raise UpstreamError(
        "Google credentials are not configured. Set one of "
        "GOOGLE_APPLICATION_CREDENTIALS, GOOGLE_APPLICATION_CREDENTIALS_JSON, "
        "or GOOGLE_APPLICATION_CREDENTIALS_B64."
    )


def build_speech_client() -> speech.SpeechClient:
    credentials = load_service_account_credentials()
    if credentials is None:
        return speech.SpeechClient()
    return speech.SpeechClient(credentials=credentials)


def convert_audio_to_wav_16khz_mono(
    input_path: Path,
    wav_path: Path,
    timeout_seconds: float = FFMPEG_TIMEOUT_SECONDS,
) -> None:
    ffmpeg_path = shutil.which("ffmpeg")
    if not ffmpeg_path:
        raise UpstreamError(
            "ffmpeg is not installed or not on PATH. Install ffmpeg (macOS: brew install ffmpeg)."
        )

    command = [
        ffmpeg_path,
        "-y",
        "-i",
        str(input_path),
        "-ac",
        "1",
        "-ar",
        str(SAMPLE_RATE_HERTZ),
        "-f",
        "wav",
        str(wav_path),
    ]
    try:
        ffmpeg_result = subprocess.run(command, capture_output=True, text=True, timeout=timeout_seconds)
    except subprocess.TimeoutExpired as exc:
        raise UpstreamError(f"Audio conversion timed out after {int(timeout_seconds)} seconds.") from exc
    if ffmpeg_result.returncode != 0:
        stderr_tail = (ffmpeg_result.stderr or "").strip().splitlines()
        message = stderr_tail[-1] if stderr_tail else "Unknown ffmpeg error"
        raise UpstreamError(f"Audio conversion failed: {message}")

    if not wav_path.exists() or wav_path.stat().st_size == 0:
        raise UpstreamError("Converted WAV audio is empty.")


def wav_duration_seconds(wav_path: Path) -> float:
    with wave.open(str(wav_path), "rb") as handle:
        rate = handle.getframerate()
        return handle.getnframes() / float(rate) if rate else 0.0


def parse_speech_response(response, fallback_duration: float = 0.0) -> TranscriptSource:
    full_text_parts: List[str] = []
    words: List[WordTiming] = []

    for result in response.results:
        if not result.alternatives:
            continue
        alternative = result.alternatives[0]
        transcript = (alternative.transcript or "").strip()
        if transcript:
            full_text_parts.append(transcript)

        for word_info in alternative.words or []:
            words.append(
                WordTiming(
                    word=word_info.word,
                    start=duration_to_seconds(word_info.start_time),
                    end=duration_to_seconds(word_info.end_time),
                )
            )

    spoken_end = max((word.end for word in words), default=0.0)
    return TranscriptSource(
        text=" ".join(full_text_parts).strip(),
        duration_seconds=max(spoken_end, fallback_duration),
        words=words,
    )


class GoogleSpeechTranscriber:
    """Google Speech-to-Text long-running recognition with word time offsets.

    Recordings longer than a minute are rejected by synchronous recognition, so
    every request goes through ``long_running_recognize`` and waits on the
    operation for at most ``timeout_seconds``.
    """

    def __init__(
        self,
        language_code: str = "en-US",
        client: Optional[speech.SpeechClient] = None,
        timeout_seconds: float = 600.0,
        ffmpeg_timeout_seconds: float = FFMPEG_TIMEOUT_SECONDS,
    ) -> None:
        self._language_code = language_code
        self._client = client
        self._timeout_seconds = timeout_seconds
        self._ffmpeg_timeout_seconds = ffmpeg_timeout_seconds

    def _speech_client(self) -> speech.SpeechClient:
        if self._client is None:
            self._client = build_speech_client()
        return self._client

    def transcribe(self, media_path: Path, work_dir: Path) -> TranscriptSource:
        wav_path = work_dir / "audio_16k_mono.wav"
        convert_audio_to_wav_16khz_mono(media_path, wav_path, timeout_seconds=self._ffmpeg_timeout_seconds)
        wav_content = wav_path.read_bytes()
        if len(wav_content) > MAX_INLINE_AUDIO_BYTES:
            raise UpstreamError(
                f"Recording is too long to transcribe ({len(wav_content)} bytes of audio, "
                f"max {MAX_INLINE_AUDIO_BYTES})."
            )

        config = speech.RecognitionConfig(
            encoding=speech.RecognitionConfig.AudioEncoding.LINEAR16,
            sample_rate_hertz=SAMPLE_RATE_HERTZ,
            language_code=self._language_code,
            enable_automatic_punctuation=True,
            enable_word_time_offsets=True,
        )
        audio = speech.RecognitionAudio(content=wav_content)
        try:
            operation = self._speech_client().long_running_recognize(config=config, audio=audio)
            response = operation.result(timeout=self._timeout_seconds)
        except concurrent.futures.TimeoutError as exc:
            raise UpstreamError(
                f"Google Speech-to-Text timed out after {int(self._timeout_seconds)} seconds."
            ) from exc
        except GoogleAPIError as exc:
            raise UpstreamError(f"Google Speech-to-Text error: {exc}") from exc

        source = parse_speech_response(response, fallback_duration=wav_duration_seconds(wav_path))
        logger.info(
            "transcription_done language=%s words=%s duration_seconds=%.2f",
            self._language_code,
            len(source.words),
            source.duration_seconds,
        )
        return source
