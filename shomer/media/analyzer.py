"""
shomer/media/analyzer.py
Media Analysis Subsystem.

  image / sticker → one vision call: short description + findings
  audio           → transcribe (LLM, then local whisper CLI), classify transcript as text
  video           → ≤10 evenly spaced frames classified as images, plus the audio
                    track when one is present; findings deduplicated per category

Per-attachment failures never abort a chat: the row is marked with a skip
reason and left out of totals.

External tools: ffprobe / ffmpeg for video, whisper for fallback
transcription. All are invoked through one runner so tests can stub them.

Privacy: descriptions are model-generated. A transcript is stored on the
message row but never copied into a description or a log line.
"""

import json
import logging
import subprocess
import tempfile
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from shomer.classifier.client import ContentClassifier
from shomer.errors import MediaUnreadable
from shomer.llm.base import MediaPart
from shomer.models.record import Finding, SubjectProfile

logger = logging.getLogger(__name__)

MAX_VIDEO_FRAMES   = 10
MIN_AUDIO_BYTES    = 1000
MEDIA_LIMIT        = 20
TOOL_TIMEOUT_SEC   = 300

IMAGE_KINDS = frozenset({'image', 'sticker'})

IMAGE_MIME = {
    '.png':  'image/png',
    '.webp': 'image/webp',
    '.gif':  'image/gif',
}
AUDIO_MIME = {
    '.mp3': 'audio/mpeg',
    '.m4a': 'audio/mp4',
    '.wav': 'audio/wav',
}


@dataclass
class MediaAnalysisResult:
    kind:        str
    description: str
    findings:    List[Finding] = field(default_factory=list)
    transcript:  Optional[str] = None
    cost:        float         = 0.0


@dataclass
class MediaFlag:
    """A media finding tied to the message row it came from."""
    message_id: int
    chat_id:    str
    chat_name:  str
    media_kind: str
    finding:    Finding
    transcript: Optional[str] = None


@dataclass
class ChatMediaOutcome:
    flags:        List[MediaFlag] = field(default_factory=list)
    cost:         float           = 0.0
    analyzed:     int             = 0
    unanalyzable: int             = 0


def deduplicate_findings(findings: List[Finding]) -> List[Finding]:
    """One finding per category: the highest-confidence instance. First-seen order."""
    best: Dict[str, Finding] = {}
    for f in findings:
        current = best.get(f.category)
        if current is None or f.confidence > current.confidence:
            best[f.category] = f
    return list(best.values())


def _image_part(path: Path) -> MediaPart:
    mime = IMAGE_MIME.get(path.suffix.lower(), 'image/jpeg')
    return MediaPart(data=path.read_bytes(), mime_type=mime)


def _audio_part(path: Path) -> MediaPart:
    ext = path.suffix.lower()
    return MediaPart(
        data      = path.read_bytes(),
        mime_type = AUDIO_MIME.get(ext, 'audio/ogg'),
        format    = ext.lstrip('.') or 'ogg',
    )


class MediaAnalyzer:

    def __init__(
        self,
        classifier:       ContentClassifier,
        whisper_model:    str                 = 'small',
        whisper_language: Optional[str]       = None,
        runner:           Optional[Callable]  = None,
        max_frames:       int                 = MAX_VIDEO_FRAMES,
    ):
        self.classifier       = classifier
        self.whisper_model    = whisper_model
        self.whisper_language = whisper_language
        self.max_frames       = max_frames
        self._run             = runner or subprocess.run

    # ── ENTRY POINT ──────────────────────────────────────────

    def analyze_attachment(
        self,
        kind:    str,
        path,
        subject: Optional[SubjectProfile] = None,
    ) -> MediaAnalysisResult:
        """
        Raises MediaUnreadable for a missing file, an unsupported kind or a
        file the tooling cannot decode. Classifier failures are not errors:
        they yield zero findings.
        """
        path = Path(path)
        if kind not in IMAGE_KINDS and kind not in ('audio', 'video'):
            raise MediaUnreadable('unsupported_type')
        if not path.is_file():
            raise MediaUnreadable('file_missing')

        subject = subject or SubjectProfile(account_id='', name='child')
        if kind in IMAGE_KINDS:
            return self._analyze_image(path, kind)
        if kind == 'audio':
            return self._analyze_audio(path, subject)
        return self._analyze_video(path, subject)

    # ── IMAGE ────────────────────────────────────────────────

    def _analyze_image(self, path: Path, kind: str = 'image') -> MediaAnalysisResult:
        result = self.classifier.classify_image(_image_part(path))
        return MediaAnalysisResult(
            kind        = kind,
            description = result.description or f"[{kind}]",
            findings    = result.findings,
            cost        = result.cost,
        )

    # ── AUDIO ────────────────────────────────────────────────

    def _analyze_audio(self, path: Path, subject: SubjectProfile) -> MediaAnalysisResult:
        transcript, cost = self.classifier.transcribe_audio(_audio_part(path))
        if transcript is None:
            logger.debug("Primary transcription unavailable — trying whisper")
            transcript = self._transcribe_with_whisper(path)

        if transcript is None:
            return MediaAnalysisResult(kind='audio', description='[untranscribable voice message]', cost=cost)
        if not transcript.strip():
            return MediaAnalysisResult(kind='audio', description='[empty voice message]', cost=cost)

        classified = self.classifier.classify_transcript(subject, transcript)
        return MediaAnalysisResult(
            kind        = 'audio',
            description = f"[voice message, {len(transcript.split())} words]",
            findings    = classified.findings,
            transcript  = transcript,
            cost        = cost + classified.cost,
        )

    def _transcribe_with_whisper(self, path: Path) -> Optional[str]:
        with tempfile.TemporaryDirectory(prefix='shomer-whisper-') as out_dir:
            cmd = [
                'whisper', str(path),
                '--model', self.whisper_model,
                '--output_format', 'txt',
                '--output_dir', out_dir,
            ]
            if self.whisper_language:
                cmd += ['--language', self.whisper_language]
            try:
                self._run(cmd, capture_output=True, timeout=TOOL_TIMEOUT_SEC, check=True)
            except (OSError, subprocess.SubprocessError) as e:
                logger.warning(f"whisper fallback failed: {type(e).__name__}")
                return None
            txt = Path(out_dir) / f"{path.stem}.txt"
            if not txt.is_file():
                return None
            return txt.read_text(encoding='utf-8').strip()

    # ── VIDEO ────────────────────────────────────────────────

    def _probe_duration(self, path: Path) -> float:
        try:
            proc = self._run(
                ['ffprobe', '-v', 'error', '-show_entries', 'format=duration',
                 '-of', 'default=noprint_wrappers=1:nokey=1', str(path)],
                capture_output=True, text=True, timeout=60, check=True,
            )
            return max(float((proc.stdout or '').strip() or 0), 0.0)
        except (OSError, subprocess.SubprocessError, ValueError, TypeError) as e:
            logger.debug(f"ffprobe gave no duration: {type(e).__name__}")
            return 0.0

    def frame_timestamps(self, duration: float) -> List[float]:
        """Evenly spaced sample points, one per segment midpoint."""
        if duration <= 0:
            return [0.0]
        count = max(1, min(self.max_frames, int(duration)))
        step = duration / count
        return [round(step * (i + 0.5), 3) for i in range(count)]

    def _extract_frames(self, path: Path, work_dir: Path) -> List[Path]:
        frames = []
        for i, ts in enumerate(self.frame_timestamps(self._probe_duration(path))):
            out = work_dir / f"frame_{i:03d}.jpg"
            try:
                self._run(
                    ['ffmpeg', '-ss', str(ts), '-i', str(path), '-frames:v', '1',
                     '-q:v', '2', str(out), '-y'],
                    capture_output=True, timeout=TOOL_TIMEOUT_SEC, check=True,
                )
            except FileNotFoundError:
                raise MediaUnreadable('ffmpeg_unavailable')
            except (OSError, subprocess.SubprocessError) as e:
                logger.debug(f"Frame {i} extraction failed: {type(e).__name__}")
                continue
            if out.is_file():
                frames.append(out)
        return frames

    def _extract_audio_track(self, path: Path, work_dir: Path) -> Optional[Path]:
        out = work_dir / 'audio.ogg'
        try:
            self._run(
                ['ffmpeg', '-i', str(path), '-vn', '-acodec', 'libopus', str(out), '-y'],
                capture_output=True, timeout=TOOL_TIMEOUT_SEC, check=True,
            )
        except (OSError, subprocess.SubprocessError):
            return None   # no audio stream
        if out.is_file() and out.stat().st_size > MIN_AUDIO_BYTES:
            return out
        return None

    def _analyze_video(self, path: Path, subject: SubjectProfile) -> MediaAnalysisResult:
        with tempfile.TemporaryDirectory(prefix='shomer-frames-') as tmp:
            work_dir = Path(tmp)
            frames = self._extract_frames(path, work_dir)
            if not frames:
                raise MediaUnreadable('no_frames')

            cost = 0.0
            descriptions: List[str] = []
            findings: List[Finding] = []
            for frame in frames:
                frame_result = self._analyze_image(frame)
                cost += frame_result.cost
                if frame_result.description and frame_result.description != '[image]':
                    descriptions.append(frame_result.description)
                findings.extend(frame_result.findings)

            transcript = None
            audio_path = self._extract_audio_track(path, work_dir)
            if audio_path is not None:
                audio = self._analyze_audio(audio_path, subject)
                cost += audio.cost
                transcript = audio.transcript
                findings.extend(audio.findings)

        logger.debug(f"Video: {len(frames)} frame(s), {len(findings)} raw finding(s)")
        return MediaAnalysisResult(
            kind        = 'video',
            description = descriptions[0] if descriptions else '[video]',
            findings    = deduplicate_findings(findings),
            transcript  = transcript,
            cost        = cost,
        )


# ── PER-CHAT DRIVER ──────────────────────────────────────────

def analyze_chat_media(
    store,
    analyzer:   MediaAnalyzer,
    account_id: str,
    chat_id:    str,
    limit:      int                      = MEDIA_LIMIT,
    subject:    Optional[SubjectProfile] = None,
) -> ChatMediaOutcome:
    """
    Analyze up to `limit` unanalyzed attachments of one chat. Each row is
    marked analyzed with either a JSON description + findings or a skip
    reason, so it is never retried.
    """
    outcome = ChatMediaOutcome()
    for msg in store.unanalyzed_media(account_id, chat_id, limit):
        try:
            if not msg.media_path:
                raise MediaUnreadable('file_missing')
            result = analyzer.analyze_attachment(msg.media_kind, msg.media_path, subject)
        except MediaUnreadable as e:
            reason = e.reason if e.reason in ('file_missing', 'unsupported_type') else f"unreadable: {e.reason}"
            store.mark_media_analyzed(msg.id, reason)
            outcome.unanalyzable += 1
            logger.info(f"Media {msg.id} skipped: {reason}")
            continue
        except Exception as e:
            store.mark_media_analyzed(msg.id, f"unreadable: {type(e).__name__}")
            outcome.unanalyzable += 1
            logger.warning(f"Media {msg.id} failed: {type(e).__name__}")
            continue

        store.mark_media_analyzed(msg.id, json.dumps({
            'description': result.description,
            'findings':    [
                {**asdict(f), 'severity': f.severity.label} for f in result.findings
            ],
        }, ensure_ascii=False))
        if result.transcript:
            store.update_transcript(msg.id, result.transcript)

        outcome.analyzed += 1
        outcome.cost += result.cost
        outcome.flags.extend(
            MediaFlag(
                message_id = msg.id,
                chat_id    = msg.chat_id,
                chat_name  = msg.chat_name or msg.chat_id,
                media_kind = msg.media_kind,
                finding    = f,
                transcript = result.transcript,
            )
            for f in result.findings
        )

    if outcome.analyzed or outcome.unanalyzable:
        logger.info(
            f"Chat {chat_id} media: {outcome.analyzed} analyzed, "
            f"{outcome.unanalyzable} unanalyzable, {len(outcome.flags)} finding(s)"
        )
    return outcome
