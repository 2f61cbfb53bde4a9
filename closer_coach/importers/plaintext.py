import re
import logging
from pathlib import Path
from datetime import datetime
from typing import List, Dict, Optional

from pydantic import BaseModel, Field

from ..schemas import RawSegment, TranscriptSegment, CallRecord
from ..speakers import SpeakerRoleResolver, apply, prospect_speaks_first

logger = logging.getLogger(__name__)


UNLABELED_PARTIES = ("PARTY 1", "PARTY 2")


class ParsedTranscript(BaseModel):
    format: str = Field(..., description="timestamped, labeled or unlabeled")
    raw_segments: List[RawSegment] = Field(default_factory=list)
    preset_roles: Optional[Dict[str, str]] = Field(None, description="Roles already known without resolution")


class TranscriptTextImporter:
    """Pasted or exported dialogue text to rep/prospect segments.

    Three layouts are recognised, in priority order: timestamped dialogue
    ("[00:12] Sarah (Agent): ..."), labeled dialogue ("REP: ..."), and bare
    lines with no speaker at all. A line that does not fit a recognised layout
    is a continuation of the previous segment.
    """

    def __init__(self):
        self.timestamp_pattern = re.compile(
            r'^\[?(\d{1,2}:\d{2}(?::\d{2})?)\]?\s*(?:([^:(]+)\s*\(([^)]+)\)|([^:]+)):\s*(.+)$',
            re.IGNORECASE
        )
        self.label_pattern = re.compile(
            r'^(REP|PROSPECT|PARENT|AGENT|CUSTOMER|CALLER|SPEAKER\s*\d*|SPEAKER\s*[AB]|USER|ASSISTANT):\s*',
            re.IGNORECASE
        )

    def parse_file(self, file_path: Path, role_hint: Optional[str] = None) -> CallRecord:
        with open(file_path, 'r', encoding='utf-8') as f:
            content = f.read()

        segments = self.parse_text(content, role_hint=role_hint)
        duration = segments[-1].end_time if segments and segments[-1].end_time else None

        return CallRecord(
            call_id=file_path.stem,
            call_date=datetime.fromtimestamp(file_path.stat().st_mtime).date().isoformat(),
            source='plaintext',
            duration_seconds=duration,
            segments=segments,
        )

    def parse_text(self, text: str, role_hint: Optional[str] = None) -> List[TranscriptSegment]:
        parsed = self.parse_raw(text)
        if not parsed.raw_segments:
            return []

        if parsed.preset_roles is not None:
            mapping = parsed.preset_roles
        else:
            mapping = SpeakerRoleResolver(role_hint=role_hint).resolve(parsed.raw_segments)

        return apply(parsed.raw_segments, mapping)

    def parse_raw(self, text: str) -> ParsedTranscript:
        lines = [line.strip() for line in (text or '').split('\n')]
        lines = [line for line in lines if line]

        if not lines:
            return ParsedTranscript(format='empty')

        if any(self.timestamp_pattern.match(line) for line in lines):
            logger.debug("Detected timestamped dialogue")
            return ParsedTranscript(format='timestamped', raw_segments=self._parse_timestamped(lines))

        if any(self.label_pattern.match(line) for line in lines):
            logger.debug("Detected labeled dialogue")
            return ParsedTranscript(format='labeled', raw_segments=self._parse_labeled(lines))

        logger.debug("No speaker labels detected, alternating speakers")
        return self._parse_unlabeled(lines)

    def _parse_timestamped(self, lines: List[str]) -> List[RawSegment]:
        entries = []
        for line in lines:
            match = self.timestamp_pattern.match(line)
            if match:
                name = (match.group(2) or match.group(4) or '').strip()
                role = (match.group(3) or '').strip()
                content = match.group(5).strip()
                if role and name:
                    label = f"{name} ({role})"
                else:
                    label = role or name or 'UNKNOWN'
                entries.append({
                    'label': label.upper(),
                    'text': content,
                    'start': self._parse_timestamp(match.group(1)),
                })
            elif entries:
                entries[-1]['text'] += ' ' + line

        raw_segments = []
        for index, entry in enumerate(entries):
            start = entry['start']
            end = entries[index + 1]['start'] if index + 1 < len(entries) else start
            raw_segments.append(RawSegment(
                raw_label=entry['label'],
                text=entry['text'],
                start_time=start,
                end_time=max(end, start),
            ))
        return raw_segments

    def _parse_labeled(self, lines: List[str]) -> List[RawSegment]:
        raw_segments: List[RawSegment] = []
        for line in lines:
            match = self.label_pattern.match(line)
            if match:
                label = re.sub(r'\s+', ' ', match.group(1).upper()).strip()
                content = line[match.end():].strip()
                if content:
                    raw_segments.append(RawSegment(raw_label=label, text=content))
            elif raw_segments:
                last = raw_segments[-1]
                raw_segments[-1] = last.model_copy(update={'text': last.text + ' ' + line})
        return raw_segments

    def _parse_unlabeled(self, lines: List[str]) -> ParsedTranscript:
        first, second = UNLABELED_PARTIES
        raw_segments = [
            RawSegment(raw_label=first if index % 2 == 0 else second, text=line)
            for index, line in enumerate(lines)
        ]
        if prospect_speaks_first(lines[0]):
            roles = {first: 'prospect', second: 'rep'}
        else:
            roles = {first: 'rep', second: 'prospect'}
        return ParsedTranscript(format='unlabeled', raw_segments=raw_segments, preset_roles=roles)

    def _parse_timestamp(self, value: str) -> float:
        parts = [int(p) for p in value.split(':')]
        if len(parts) == 3:
            return parts[0] * 3600 + parts[1] * 60 + parts[2]
        return parts[0] * 60 + parts[1]
