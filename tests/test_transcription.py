import concurrent.futures
import subprocess
import wave
from datetime import timedelta
from types import SimpleNamespace

import pytest
from google.api_core.exceptions import InvalidArgument, ServiceUnavailable

from app.presence import transcription
from app.presence.errors import UpstreamError
from app.presence.transcription import (
    GoogleSpeechTranscriber,
    convert_audio_to_wav_16khz_mono,
    parse_speech_response,
)


def _word(word, start, end):
    return SimpleNamespace(word=word, start_time=timedelta(seconds=start), end_time=timedelta(seconds=end))


def _response(*alternatives):
    results = [SimpleNamespace(alternatives=[alt] if alt else []) for alt in alternatives]
    return SimpleNamespace(results=results)


SPEECH_RESPONSE = _response(
    SimpleNamespace(transcript="We ship on Friday.", words=[_word("We", 0.0, 0.2), _word("ship", 0.3, 0.6)]),
    None,
    SimpleNamespace(transcript=" No delays. ", words=[_word("No", 1.5, 1.7), _word("delays", 1.8, 2.25)]),
)


def _write_silent_wav(path, seconds=3.0):
    with wave.open(str(path), "wb") as handle:
        handle.setnchannels(1)
        handle.setsampwidth(2)
        handle.setframerate(16000)
        handle.writeframes(b"\x00\x00" * int(16000 * seconds))


class _FakeOperation:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.timeouts = []

    def result(self, timeout=None):
        self.timeouts.append(timeout)
        if self.error is not None:
            raise self.error
        return self.response


class _FakeSpeechClient:
    def __init__(self, response=None, error=None, request_error=None):
        self.operation = _FakeOperation(response, error)
        self.request_error = request_error
        self.configs = []

    def long_running_recognize(self, config, audio):
        self.configs.append(config)
        if self.request_error is not None:
            raise self.request_error
        return self.operation


def test_parse_speech_response_joins_text_and_offsets():
    source = parse_speech_response(SPEECH_RESPONSE)

    assert source.text == "We ship on Friday. No delays."
    assert [word.word for word in source.words] == ["We", "ship", "No", "delays"]
    assert source.words[1].start == pytest.approx(0.3)
    assert source.duration_seconds == pytest.approx(2.25)


def test_fallback_duration_covers_trailing_silence():
    source = parse_speech_response(SPEECH_RESPONSE, fallback_duration=4.0)
    assert source.duration_seconds == 4.0


@pytest.fixture
def fake_conversion(monkeypatch: pytest.MonkeyPatch):
    def _convert(input_path, wav_path, timeout_seconds=None):
        _write_silent_wav(wav_path, seconds=3.0)

    monkeypatch.setattr(transcription, "convert_audio_to_wav_16khz_mono", _convert)


def test_transcribe_waits_on_long_running_operation(fake_conversion, tmp_path):
    client = _FakeSpeechClient(response=SPEECH_RESPONSE)
    transcriber = GoogleSpeechTranscriber(language_code="en-GB", client=client, timeout_seconds=90)

    source = transcriber.transcribe(tmp_path / "input.webm", tmp_path)

    assert source.text.startswith("We ship")
    assert source.duration_seconds == pytest.approx(3.0)
    assert client.operation.timeouts == [90]
    config = client.configs[0]
    assert config.enable_word_time_offsets is True
    assert config.language_code == "en-GB"
    assert config.sample_rate_hertz == 16000


@pytest.mark.parametrize(
    "client, match",
    [
        (_FakeSpeechClient(request_error=ServiceUnavailable("backend down")), "Speech-to-Text error"),
        (_FakeSpeechClient(error=InvalidArgument("bad audio")), "Speech-to-Text error"),
        (_FakeSpeechClient(error=concurrent.futures.TimeoutError()), "timed out after 30 seconds"),
    ],
)
def test_speech_failures_are_upstream_errors(fake_conversion, tmp_path, client, match):
    transcriber = GoogleSpeechTranscriber(client=client, timeout_seconds=30)

    with pytest.raises(UpstreamError, match=match):
        transcriber.transcribe(tmp_path / "input.webm", tmp_path)


def test_oversized_audio_is_rejected_before_the_request(monkeypatch: pytest.MonkeyPatch, tmp_path):
    monkeypatch.setattr(transcription, "MAX_INLINE_AUDIO_BYTES", 1024)

    def _convert(input_path, wav_path, timeout_seconds=None):
        _write_silent_wav(wav_path, seconds=1.0)

    monkeypatch.setattr(transcription, "convert_audio_to_wav_16khz_mono", _convert)
    client = _FakeSpeechClient(response=SPEECH_RESPONSE)

    with pytest.raises(UpstreamError, match="too long"):
        GoogleSpeechTranscriber(client=client).transcribe(tmp_path / "input.webm", tmp_path)
    assert client.configs == []


def test_stalled_ffmpeg_is_upstream_error(monkeypatch: pytest.MonkeyPatch, tmp_path):
    seen = {}

    def _run(command, **kwargs):
        seen.update(kwargs)
        raise subprocess.TimeoutExpired(command, kwargs.get("timeout"))

    monkeypatch.setattr(transcription.shutil, "which", lambda name: "/usr/bin/ffmpeg")
    monkeypatch.setattr(transcription.subprocess, "run", _run)

    with pytest.raises(UpstreamError, match="timed out after 5 seconds"):
        convert_audio_to_wav_16khz_mono(tmp_path / "input.webm", tmp_path / "out.wav", timeout_seconds=5)
    assert seen["timeout"] == 5


def test_missing_credentials(monkeypatch: pytest.MonkeyPatch):
    for name in (
        "GOOGLE_APPLICATION_CREDENTIALS",
        "GOOGLE_APPLICATION_CREDENTIALS_JSON",
        "GOOGLE_APPLICATION_CREDENTIALS_B64",
    ):
        monkeypatch.delenv(name, raising=False)

    with pytest.raises(UpstreamError, match="not configured"):
        transcription.load_service_account_credentials()


def test_invalid_inline_credentials(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("GOOGLE_APPLICATION_CREDENTIALS_B64", raising=False)
    monkeypatch.setenv("GOOGLE_APPLICATION_CREDENTIALS_JSON", "{not json")

    with pytest.raises(UpstreamError, match="Invalid GOOGLE_APPLICATION_CREDENTIALS_JSON"):
        transcription.load_service_account_credentials()
