"""
tests/test_media_analyzer.py
Media subsystem with a stubbed tool runner: no ffmpeg, ffprobe or
whisper is ever executed.
"""

import json
import subprocess
from pathlib import Path
from types import SimpleNamespace

import pytest

from fakes import FakeLLM, finding, make_classifier, message, subject, write_file
from shomer.errors import MediaUnreadable
from shomer.media.analyzer import MediaAnalyzer, analyze_chat_media, deduplicate_findings
from shomer.models.record import Finding
from shomer.models.risk import Severity

TRANSCRIPT = "are you coming to the park later with the others"


def _vision(description='A group of friends outdoors.', *items):
    return json.dumps({'description': description, 'findings': list(items)})


def _handler(vision=None, transcription=None, transcript_findings=None):
    """Route by model / payload the way the classifier addresses them."""
    def handler(req):
        if req.model == 'vision':
            return vision if vision is not None else _vision()
        if req.audio is not None:
            return transcription
        return transcript_findings if transcript_findings is not None else json.dumps({'findings': []})
    return handler


class FakeRunner:
    """Stands in for subprocess.run. Writes the files the real tools would."""

    def __init__(self, duration='3.0', whisper_text=None, audio_bytes=0, ffmpeg_missing=False):
        self.duration       = duration
        self.whisper_text   = whisper_text
        self.audio_bytes    = audio_bytes
        self.ffmpeg_missing = ffmpeg_missing
        self.calls          = []

    def __call__(self, cmd, **kwargs):
        self.calls.append(cmd)
        tool = cmd[0]
        if tool == 'ffprobe':
            return SimpleNamespace(stdout=self.duration, returncode=0)
        if tool == 'ffmpeg':
            if self.ffmpeg_missing:
                raise FileNotFoundError('ffmpeg')
            out = Path(cmd[-2])
            if '-vn' in cmd:
                if not self.audio_bytes:
                    raise subprocess.CalledProcessError(1, cmd)
                out.write_bytes(b'\x01' * self.audio_bytes)
            else:
                out.write_bytes(b'\xff\xd8frame')
            return SimpleNamespace(returncode=0)
        if tool == 'whisper':
            if self.whisper_text is None:
                raise FileNotFoundError('whisper')
            out_dir = Path(cmd[cmd.index('--output_dir') + 1])
            (out_dir / f"{Path(cmd[1]).stem}.txt").write_text(self.whisper_text, encoding='utf-8')
            return SimpleNamespace(returncode=0)
        raise AssertionError(f"unexpected tool {tool}")


def _analyzer(llm, runner=None, **kwargs):
    return MediaAnalyzer(make_classifier(llm), runner=runner or FakeRunner(), **kwargs)


class TestDeduplicate:

    def test_keeps_highest_confidence_per_category(self):
        fs = [
            Finding(Severity.HIGH, 'weapon', 'a', 'r', 0.6),
            Finding(Severity.HIGH, 'weapon', 'b', 'r', 0.9),
            Finding(Severity.MEDIUM, 'personal_info', 'c', 'r', 0.7),
        ]
        out = deduplicate_findings(fs)
        assert [(f.category, f.summary) for f in out] == [('weapon', 'b'), ('personal_info', 'c')]


class TestImage:

    def test_description_and_findings(self, tmp_path):
        path = write_file(tmp_path / 'pic.jpg')
        llm = FakeLLM(_handler(vision=_vision(
            'A person holding a knife.', finding(severity='critical', category='weapon', confidence=0.85),
        )))
        result = _analyzer(llm).analyze_attachment('image', path)
        assert result.description == 'A person holding a knife.'
        assert [f.category for f in result.findings] == ['weapon']
        assert llm.requests[0].images[0].mime_type == 'image/jpeg'

    def test_sticker_treated_as_image(self, tmp_path):
        path = write_file(tmp_path / 'st.webp')
        llm = FakeLLM(_handler())
        result = _analyzer(llm).analyze_attachment('sticker', path)
        assert result.kind == 'sticker'
        assert llm.requests[0].images[0].mime_type == 'image/webp'

    def test_failed_vision_call_is_zero_findings(self, tmp_path):
        path = write_file(tmp_path / 'pic.png')
        result = _analyzer(FakeLLM(lambda req: None)).analyze_attachment('image', path)
        assert result.findings == []
        assert result.description == '[image]'

    def test_missing_file(self, tmp_path):
        with pytest.raises(MediaUnreadable) as exc:
            _analyzer(FakeLLM()).analyze_attachment('image', tmp_path / 'nope.jpg')
        assert exc.value.reason == 'file_missing'

    def test_unsupported_kind(self, tmp_path):
        path = write_file(tmp_path / 'doc.pdf')
        with pytest.raises(MediaUnreadable) as exc:
            _analyzer(FakeLLM()).analyze_attachment('document', path)
        assert exc.value.reason == 'unsupported_type'


class TestAudio:

    def test_primary_transcription(self, tmp_path):
        path = write_file(tmp_path / 'voice.ogg')
        llm = FakeLLM(_handler(
            transcription=json.dumps({'transcription': TRANSCRIPT}),
            transcript_findings=json.dumps({'findings': [finding(category='pressure', severity='medium')]}),
        ), supports_audio=True)
        runner = FakeRunner()
        result = _analyzer(llm, runner).analyze_attachment('audio', path, subject())
        assert result.transcript == TRANSCRIPT
        assert result.description == f"[voice message, {len(TRANSCRIPT.split())} words]"
        assert TRANSCRIPT not in result.description
        assert [f.category for f in result.findings] == ['pressure']
        assert runner.calls == []

    def test_whisper_fallback(self, tmp_path):
        path = write_file(tmp_path / 'voice.ogg')
        runner = FakeRunner(whisper_text=TRANSCRIPT)
        llm = FakeLLM(_handler())
        result = _analyzer(llm, runner, whisper_language='he').analyze_attachment('audio', path)
        assert result.transcript == TRANSCRIPT
        cmd = runner.calls[0]
        assert cmd[:2] == ['whisper', str(path)]
        assert cmd[cmd.index('--language') + 1] == 'he'

    def test_untranscribable(self, tmp_path):
        path = write_file(tmp_path / 'voice.ogg')
        result = _analyzer(FakeLLM(_handler()), FakeRunner(whisper_text=None)).analyze_attachment('audio', path)
        assert result.description == '[untranscribable voice message]'
        assert result.findings == []
        assert result.transcript is None

    def test_empty_transcript(self, tmp_path):
        path = write_file(tmp_path / 'voice.ogg')
        result = _analyzer(FakeLLM(_handler()), FakeRunner(whisper_text='  ')).analyze_attachment('audio', path)
        assert result.description == '[empty voice message]'


class TestVideo:

    def test_frame_timestamps(self):
        analyzer = _analyzer(FakeLLM())
        assert analyzer.frame_timestamps(0) == [0.0]
        assert analyzer.frame_timestamps(3.0) == [0.5, 1.5, 2.5]
        assert len(analyzer.frame_timestamps(600)) == 10
        assert len(analyzer.frame_timestamps(0.4)) == 1

    def test_frames_classified_and_deduplicated(self, tmp_path):
        path = write_file(tmp_path / 'clip.mp4')
        confidences = iter([0.6, 0.9, 0.7])

        def handler(req):
            return _vision('A street at night.', finding(category='violence', confidence=next(confidences)))

        runner = FakeRunner(duration='3.0')
        result = _analyzer(FakeLLM(handler), runner).analyze_attachment('video', path)
        assert result.kind == 'video'
        assert len(result.findings) == 1
        assert result.findings[0].confidence == 0.9
        assert sum(1 for c in runner.calls if c[0] == 'ffmpeg' and '-frames:v' in c) == 3

    def test_audio_track_analyzed_when_present(self, tmp_path):
        path = write_file(tmp_path / 'clip.mp4')
        runner = FakeRunner(duration='1.0', audio_bytes=5000, whisper_text=TRANSCRIPT)
        llm = FakeLLM(_handler(
            transcript_findings=json.dumps({'findings': [finding(category='bullying')]}),
        ))
        result = _analyzer(llm, runner).analyze_attachment('video', path)
        assert result.transcript == TRANSCRIPT
        assert [f.category for f in result.findings] == ['bullying']

    def test_tiny_audio_track_ignored(self, tmp_path):
        path = write_file(tmp_path / 'clip.mp4')
        runner = FakeRunner(duration='1.0', audio_bytes=500, whisper_text=TRANSCRIPT)
        result = _analyzer(FakeLLM(_handler()), runner).analyze_attachment('video', path)
        assert result.transcript is None
        assert not any(c[0] == 'whisper' for c in runner.calls)

    def test_duration_failure_still_samples_one_frame(self, tmp_path):
        path = write_file(tmp_path / 'clip.mp4')
        runner = FakeRunner(duration='N/A')
        _analyzer(FakeLLM(_handler()), runner).analyze_attachment('video', path)
        assert sum(1 for c in runner.calls if '-frames:v' in c) == 1

    def test_ffmpeg_missing(self, tmp_path):
        path = write_file(tmp_path / 'clip.mp4')
        with pytest.raises(MediaUnreadable) as exc:
            _analyzer(FakeLLM(), FakeRunner(ffmpeg_missing=True)).analyze_attachment('video', path)
        assert exc.value.reason == 'ffmpeg_unavailable'


class TestAnalyzeChatMedia:

    def test_rows_marked_and_flags_returned(self, store, account, tmp_path):
        pic = write_file(tmp_path / 'pic.jpg')
        store.insert_message('acct-1', message('c1', 0, media_kind='image', media_path=str(pic)))
        store.insert_message('acct-1', message('c1', 1, media_kind='image',
                                               media_path=str(tmp_path / 'missing.jpg')))
        store.insert_message('acct-1', message('c1', 2, media_kind='document',
                                               media_path=str(pic)))
        llm = FakeLLM(_handler(vision=_vision(
            'A handwritten note.', finding(category='threat', severity='high', confidence=0.8),
        )))
        outcome = analyze_chat_media(store, _analyzer(llm), 'acct-1', 'c1', subject=subject())

        assert outcome.analyzed == 1
        assert outcome.unanalyzable == 2
        assert [f.finding.category for f in outcome.flags] == ['threat']
        assert store.count_unanalyzed_media('acct-1', 'c1') == 0

        rows = {m.external_id: m.id for m in store.last_n_messages('acct-1', 'c1', 10)}
        stored = json.loads(store.media_result(rows['c1-0000']))
        assert stored['description'] == 'A handwritten note.'
        assert stored['findings'][0]['severity'] == 'high'
        assert store.media_result(rows['c1-0001']) == 'file_missing'
        assert store.media_result(rows['c1-0002']) == 'unsupported_type'

    def test_limit_respected(self, store, account, tmp_path):
        pic = write_file(tmp_path / 'pic.jpg')
        for i in range(5):
            store.insert_message('acct-1', message('c1', i, media_kind='image', media_path=str(pic)))
        outcome = analyze_chat_media(store, _analyzer(FakeLLM(_handler())), 'acct-1', 'c1', limit=3)
        assert outcome.analyzed == 3
        assert store.count_unanalyzed_media('acct-1', 'c1') == 2

    def test_transcript_stored_on_row(self, store, account, tmp_path):
        voice = write_file(tmp_path / 'v.ogg')
        store.insert_message('acct-1', message('c1', 0, media_kind='audio', media_path=str(voice)))
        runner = FakeRunner(whisper_text=TRANSCRIPT)
        analyze_chat_media(store, _analyzer(FakeLLM(_handler()), runner), 'acct-1', 'c1')
        assert store.last_n_messages('acct-1', 'c1', 1)[0].transcript == TRANSCRIPT
        assert TRANSCRIPT not in store.media_result(store.last_n_messages('acct-1', 'c1', 1)[0].id)
