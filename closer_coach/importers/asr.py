import re
import json
import logging
from pathlib import Path
from typing import List, Optional

from ..schemas import AsrResult, AsrSegment, TranscriptSegment, CallRecord
from ..speakers import PatternTables, load_pattern_tables

logger = logging.getLogger(__name__)


PAUSE_THRESHOLD = 1.5
MERGE_GAP = 2.0
SHORT_REPLY_MAX_CHARS = 20

SENTENCE_SPLIT = re.compile(r'(?<=[.!?])\s+')
SHORT_REPLY = re.compile(r'^(okay|yes|yeah|uh|um|right|sure|no|hmm)', re.IGNORECASE)


class AsrImporter:
    """Speech-to-text output without diarization to rep/prospect segments.

    strategy="pause" flips the speaker whenever the silence before a segment
    exceeds PAUSE_THRESHOLD seconds, starting with the rep. strategy="content"
    scores each segment against the "asr" pattern set and merges consecutive
    segments from the same speaker.
    """

    STRATEGIES = ("pause", "content")

    def __init__(self, strategy: str = "pause", tables: Optional[PatternTables] = None):
        if strategy not in self.STRATEGIES:
            raise ValueError(f"Unknown ASR speaker strategy: {strategy}")
        self.strategy = strategy
        self.tables = tables

    def parse_file(self, file_path: Path) -> CallRecord:
        with open(file_path, 'r', encoding='utf-8') as f:
            data = json.load(f)

        result = AsrResult.model_validate(data)
        return CallRecord(
            call_id=data.get('call_id') or file_path.stem,
            rep_id=data.get('rep_id'),
            rep_name=data.get('rep_name'),
            call_date=data.get('call_date'),
            source='asr',
            duration_seconds=result.duration or None,
            segments=self.to_segments(result),
        )

    def to_segments(self, result: AsrResult) -> List[TranscriptSegment]:
        if not result.segments:
            return self._split_sentences(result.text)

        if self.strategy == "content":
            return self._assign_by_content(result.segments)
        return self._assign_by_pause(result.segments)

    def _split_sentences(self, text: str) -> List[TranscriptSegment]:
        sentences = [s.strip() for s in SENTENCE_SPLIT.split(text or '')]
        sentences = [s for s in sentences if s]
        return [
            TranscriptSegment(speaker='rep' if i % 2 == 0 else 'prospect', text=s)
            for i, s in enumerate(sentences)
        ]

    def _assign_by_pause(self, asr_segments: List[AsrSegment]) -> List[TranscriptSegment]:
        segments = []
        speaker = 'rep'

        for index, seg in enumerate(asr_segments):
            if index > 0 and seg.start - asr_segments[index - 1].end > PAUSE_THRESHOLD:
                speaker = 'prospect' if speaker == 'rep' else 'rep'
            text = seg.text.strip()
            if not text:
                continue
            segments.append(TranscriptSegment(
                speaker=speaker,
                text=text,
                start_time=seg.start,
                end_time=max(seg.end, seg.start),
            ))

        return segments

    def _assign_by_content(self, asr_segments: List[AsrSegment]) -> List[TranscriptSegment]:
        tables = self.tables or load_pattern_tables()
        patterns = tables.content_set("asr")

        segments = []
        last_speaker = 'prospect'

        for seg in asr_segments:
            text = seg.text.strip()
            if not text:
                continue

            rep_score = 2 * sum(1 for p in patterns['rep'] if p.search(text))
            prospect_score = 2 * sum(1 for p in patterns['prospect'] if p.search(text))
            if text.endswith('?'):
                prospect_score += 1
            if len(text) < SHORT_REPLY_MAX_CHARS and SHORT_REPLY.match(text):
                prospect_score += 1

            if rep_score > prospect_score:
                speaker = 'rep'
            elif prospect_score > rep_score:
                speaker = 'prospect'
            else:
                speaker = 'prospect' if last_speaker == 'rep' else 'rep'

            segments.append(TranscriptSegment(
                speaker=speaker,
                text=text,
                start_time=seg.start,
                end_time=max(seg.end, seg.start),
            ))
            last_speaker = speaker

        return merge_consecutive(segments)


def merge_consecutive(segments: List[TranscriptSegment], max_gap: float = MERGE_GAP) -> List[TranscriptSegment]:
    if not segments:
        return []

    merged = [segments[0]]
    for seg in segments[1:]:
        current = merged[-1]
        if seg.speaker == current.speaker and seg.start_time - current.end_time <= max_gap:
            merged[-1] = current.model_copy(update={
                'text': current.text + ' ' + seg.text,
                'end_time': max(seg.end_time, current.end_time),
            })
        else:
            merged.append(seg)
    return merged
