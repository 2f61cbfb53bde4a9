import re
import logging
from pathlib import Path
from datetime import datetime
from typing import List, Optional, Tuple, Dict, Any

from pydantic import BaseModel, Field

from ..schemas import TranscriptSegment, CallRecord

logger = logging.getLogger(__name__)


ESTIMATED_LAST_SEGMENT_SECONDS = 5

HEADER_PREFIXES = ('Main agent:', 'External user:', 'Start time:', 'Total time:')


class RingoverLine(BaseModel):
    speaker: str
    text: str
    seconds: int


class RingoverTranscript(BaseModel):
    segments: List[TranscriptSegment] = Field(default_factory=list)
    rep_name: Optional[str] = None
    prospect_identifier: Optional[str] = None
    duration: float = 0


class RingoverImporter:
    """Parser for Ringover call transcript exports.

    Two layouts exist. The older one keeps everything on one line:

        00:02 - George Bier - "Good evening. Am I speaking with Chica?"

    The newer one has a header block (with a "Main agent:" line) and then
    alternates "<time> - <speaker>" lines with the spoken text:

        5s - George Bier
        Hey, how are you?
        1m 30s - +44 7700 900123
        Fine thanks.
    """

    def __init__(self):
        self.inline_pattern = re.compile(r'^(\d{2}:\d{2})\s*-\s*([^-]+?)\s*-\s*"(.+)"$')
        self.seconds_pattern = re.compile(r'^(\d+)\s*s\s*-\s*(.+)$')
        self.minutes_pattern = re.compile(r'^(\d+)\s*m(?:in)?\s*(\d+)\s*s?\s*-\s*(.+)$')
        self.main_agent_pattern = re.compile(r'^Main agent:\s*(.+)$', re.IGNORECASE)
        self.phone_pattern = re.compile(r'^\+?\d[\d\s-]{6,}$')
        self.filename_pattern = re.compile(r'log_call_export_(\d{4}-\d{2}-\d{2}T[\d_]+\.\d+Z)_(\d+)_([A-Z]{2})\.')

    def looks_like_export(self, content: str) -> bool:
        lines = [line.strip() for line in content.split('\n')]
        if any(self.main_agent_pattern.match(line) for line in lines):
            return True
        return any(self.inline_pattern.match(line) or self._match_time_line(line) for line in lines)

    def parse_file(self, file_path: Path) -> CallRecord:
        with open(file_path, 'r', encoding='utf-8') as f:
            content = f.read()

        parsed = self.parse_text(content)
        export_date, call_id, _ = self.parse_filename(file_path.name)

        return CallRecord(
            call_id=call_id or file_path.stem,
            rep_name=parsed.rep_name,
            call_date=export_date.date().isoformat() if export_date else None,
            source='ringover',
            duration_seconds=parsed.duration,
            segments=parsed.segments,
        )

    def parse_text(self, content: str) -> RingoverTranscript:
        lines = content.strip().split('\n')

        parsed_lines = self._parse_inline(lines)
        main_agent = None
        if not parsed_lines:
            parsed_lines, main_agent = self._parse_blocks(lines)

        if not parsed_lines:
            raise ValueError("No valid transcript lines found. Check the file format.")

        rep_name, prospect_id = self._identify_speakers(parsed_lines, main_agent)

        segments = []
        for index, line in enumerate(parsed_lines):
            if index + 1 < len(parsed_lines):
                end = parsed_lines[index + 1].seconds
            else:
                end = line.seconds + ESTIMATED_LAST_SEGMENT_SECONDS
            segments.append(TranscriptSegment(
                speaker='rep' if line.speaker == rep_name else 'prospect',
                text=line.text,
                start_time=line.seconds,
                end_time=max(end, line.seconds),
            ))

        return RingoverTranscript(
            segments=segments,
            rep_name=rep_name,
            prospect_identifier=prospect_id,
            duration=segments[-1].end_time,
        )

    def _parse_inline(self, lines: List[str]) -> List[RingoverLine]:
        parsed = []
        for line in lines:
            match = self.inline_pattern.match(line.strip())
            if match:
                mins, secs = (int(p) for p in match.group(1).split(':'))
                parsed.append(RingoverLine(
                    speaker=match.group(2).strip(),
                    text=match.group(3).strip(),
                    seconds=mins * 60 + secs,
                ))
        return parsed

    def _match_time_line(self, line: str) -> Optional[Tuple[int, str]]:
        match = self.minutes_pattern.match(line)
        if match:
            return int(match.group(1)) * 60 + int(match.group(2)), match.group(3).strip()
        match = self.seconds_pattern.match(line)
        if match:
            return int(match.group(1)), match.group(2).strip()
        return None

    def _parse_blocks(self, lines: List[str]) -> Tuple[List[RingoverLine], Optional[str]]:
        start_index = None
        for i, line in enumerate(lines):
            lowered = line.strip().lower()
            if lowered.startswith('transcription') or lowered.startswith('transcript'):
                start_index = i + 1
                break

        if start_index is None:
            for i, line in enumerate(lines):
                if self._match_time_line(line.strip()):
                    start_index = i
                    break

        if start_index is None:
            return [], None

        main_agent = None
        for line in lines[:start_index]:
            match = self.main_agent_pattern.match(line.strip())
            if match:
                main_agent = match.group(1).strip()
                break

        entries: List[Dict[str, Any]] = []
        current = None
        for line in lines[start_index:]:
            line = line.strip()
            if not line:
                continue

            timed = self._match_time_line(line)
            if timed and timed[1]:
                if current and current['text']:
                    entries.append(current)
                current = {'seconds': timed[0], 'speaker': timed[1], 'text': []}
            elif current is not None and not any(p in line for p in HEADER_PREFIXES):
                current['text'].append(line)

        if current and current['text']:
            entries.append(current)

        parsed = [
            RingoverLine(speaker=e['speaker'], text=' '.join(e['text']), seconds=e['seconds'])
            for e in entries
        ]
        return parsed, main_agent

    def _is_phone_number(self, value: str) -> bool:
        return bool(self.phone_pattern.match(re.sub(r'\s', '', value)))

    def _identify_speakers(self, parsed_lines: List[RingoverLine], main_agent: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
        speakers = list(dict.fromkeys(line.speaker for line in parsed_lines))

        rep_name = None
        prospect_id = None

        if main_agent and main_agent in speakers:
            rep_name = main_agent
            prospect_id = next((s for s in speakers if s != rep_name), None)
        else:
            for speaker in speakers:
                if self._is_phone_number(speaker):
                    prospect_id = speaker
                elif not rep_name:
                    rep_name = speaker
                else:
                    prospect_id = speaker

        if len(speakers) >= 2 and (not rep_name or not prospect_id):
            # Whoever talks most is taken to be the rep
            counts = sorted(
                speakers,
                key=lambda s: sum(1 for line in parsed_lines if line.speaker == s),
                reverse=True,
            )
            if not rep_name:
                rep_name = counts[0]
            if not prospect_id or prospect_id == rep_name:
                prospect_id = next((s for s in counts if s != rep_name), None)

        logger.debug(f"Ringover speakers: rep={rep_name}, prospect={prospect_id}")
        return rep_name, prospect_id

    def parse_filename(self, filename: str) -> Tuple[Optional[datetime], Optional[str], Optional[str]]:
        """Export date, call id and language from log_call_export_<date>_<id>_<LANG>.txt"""
        match = self.filename_pattern.search(filename)
        if not match:
            return None, None, None

        date_str, call_id, language = match.groups()
        date_part, _, time_part = date_str.partition('T')
        clock = time_part.partition('.')[0]
        try:
            export_date = datetime.strptime(f"{date_part}T{clock.replace('_', ':')}", '%Y-%m-%dT%H:%M:%S')
        except ValueError:
            export_date = None

        return export_date, call_id, language
