"""Task extraction from email messages.

``TaskExtractor`` is the interface the email engine depends on. The bundled
``KeywordTaskExtractor`` is rule based: it looks for request phrasing,
urgency words, due-date phrases and a greeting that names the assignee.
"""

import re
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

import parsedatetime

from .models import EmailMessage, ExtractedTask
from ..models import TASK_DESCRIPTION_MAX_LENGTH, TASK_TITLE_MAX_LENGTH, TaskPriority, User
from ..utils.datetime import now_utc


class TaskExtractor(ABC):
    """Decides whether an email asks for work and describes that work."""

    @abstractmethod
    async def extract(self, message: EmailMessage, members: Sequence[User] = (),
                      now: Optional[datetime] = None) -> ExtractedTask:
        """Extract a task from one message.

        Args:
            message: Full message (body included)
            members: Team members the task may be assigned to
            now: Reference instant for relative due dates

        Returns:
            ExtractedTask; ``has_task`` is False when nothing actionable was found
        """
        pass


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit - 3].rstrip() + "..."


class KeywordTaskExtractor(TaskExtractor):
    """Rule-based extractor.

    Every request cue found raises the confidence; newsletter and FYI cues
    lower it.
    """

    BASE_CONFIDENCE = 0.35
    CUE_WEIGHT = 0.2
    NOISE_PENALTY = 0.3
    MAX_CONFIDENCE = 0.95

    def __init__(self):
        self.cal = parsedatetime.Calendar()

        self.action_patterns = [
            re.compile(r'\bplease\b', re.IGNORECASE),
            re.compile(r'\b(?:can|could|would) you\b', re.IGNORECASE),
            re.compile(r'\bneed (?:you|someone) to\b', re.IGNORECASE),
            re.compile(r'\b(?:action required|action item|to-?do)\b', re.IGNORECASE),
            re.compile(r'\b(?:deadline|due (?:by|on|date))\b', re.IGNORECASE),
            re.compile(r'\b(?:follow[ -]up|reminder|remind)\b', re.IGNORECASE),
            re.compile(r'\b(?:asap|urgent|urgently)\b', re.IGNORECASE),
        ]
        self.noise_patterns = [
            re.compile(r'\bunsubscribe\b', re.IGNORECASE),
            re.compile(r'\bnewsletter\b', re.IGNORECASE),
            re.compile(r'\b(?:fyi|for your information)\b', re.IGNORECASE),
            re.compile(r'\bno action (?:is )?(?:required|needed)\b', re.IGNORECASE),
        ]
        self.priority_patterns = {
            TaskPriority.HIGH: re.compile(
                r'\b(?:urgent|urgently|asap|immediately|critical|high priority)\b', re.IGNORECASE),
            TaskPriority.LOW: re.compile(
                r'\b(?:no rush|whenever|low priority|when you get a chance)\b', re.IGNORECASE),
        }

        self.subject_prefix = re.compile(r'^(?:\s*(?:re|fwd?|fw)\s*:\s*)+', re.IGNORECASE)
        self.html_tag = re.compile(r'<[^>]+>')
        self.iso_date = re.compile(r'\b(\d{4}-\d{2}-\d{2})\b')
        self.relative_day = re.compile(r'\b(today|tonight|tomorrow|end of (?:the )?week|next week)\b',
                                       re.IGNORECASE)
        self.prepositional = re.compile(r'\b(?:by|before|due|on)\s+([A-Za-z0-9 /:]+?)(?=[.,;!?\n]|$)',
                                        re.IGNORECASE)
        self.greeting = re.compile(
            r'^\s*(?i:hi|hello|hey|dear)\s+([A-Z][a-z]+(?: [A-Z][a-z]+)?)\s*[,!:]', re.MULTILINE)
        self.direct_address = re.compile(
            r'\b([A-Z][a-z]+),\s+(?i:can|could|would|please)\b')

    async def extract(self, message: EmailMessage, members: Sequence[User] = (),
                      now: Optional[datetime] = None) -> ExtractedTask:
        now = now or now_utc()
        body = self._plain_text(message.text)
        text = f"{message.subject}\n{body}"

        cues = sum(1 for pattern in self.action_patterns if pattern.search(text))
        if cues == 0:
            return ExtractedTask(has_task=False)

        noise = sum(1 for pattern in self.noise_patterns if pattern.search(text))
        confidence = self.BASE_CONFIDENCE + self.CUE_WEIGHT * cues - self.NOISE_PENALTY * noise
        confidence = round(max(0.0, min(self.MAX_CONFIDENCE, confidence)), 2)

        return ExtractedTask(
            has_task=True,
            title=self._title(message.subject, body),
            description=self._description(message, body),
            priority=self._priority(text),
            due_date=self.parse_due_date(text, now),
            confidence=confidence,
            assigned_to_name=self._assignee_name(body, members),
        )

    def _plain_text(self, text: str) -> str:
        text = self.html_tag.sub(' ', text)
        lines = [' '.join(line.split()) for line in text.splitlines()]
        return '\n'.join(line for line in lines if line)

    def _title(self, subject: str, body: str) -> str:
        title = self.subject_prefix.sub('', subject).strip()
        if not title:
            first_line = body.split('\n', 1)[0]
            title = re.split(r'(?<=[.!?])\s', first_line, maxsplit=1)[0].strip()
        return _truncate(title or "Task from email", TASK_TITLE_MAX_LENGTH)

    def _description(self, message: EmailMessage, body: str) -> str:
        description = body or message.subject or "Task from email"
        return _truncate(f"From {message.sender_name}: {description}", TASK_DESCRIPTION_MAX_LENGTH)

    def _priority(self, text: str) -> TaskPriority:
        for priority in (TaskPriority.HIGH, TaskPriority.LOW):
            if self.priority_patterns[priority].search(text):
                return priority
        return TaskPriority.MEDIUM

    def _end_of_day(self, day: datetime) -> datetime:
        return day.replace(hour=23, minute=59, second=59, microsecond=0)

    def parse_due_date(self, text: str, now: datetime) -> Optional[datetime]:
        """Find a due date: an ISO date, a relative day, or a ``by <phrase>`` date.

        Dates without a time of day fall at the end of that day in ``now``'s zone.
        """
        match = self.iso_date.search(text)
        if match:
            try:
                day = datetime.strptime(match.group(1), '%Y-%m-%d').replace(tzinfo=now.tzinfo)
                return self._end_of_day(day)
            except ValueError:
                pass

        match = self.relative_day.search(text)
        if match:
            phrase = match.group(1).lower()
            if phrase in ('today', 'tonight'):
                return self._end_of_day(now)
            if phrase == 'tomorrow':
                return self._end_of_day(now + timedelta(days=1))
            if phrase == 'next week':
                return self._end_of_day(now + timedelta(weeks=1))
            # end of week: the coming Sunday
            return self._end_of_day(now + timedelta(days=6 - now.weekday()))

        for match in self.prepositional.finditer(text):
            time_struct, parse_status = self.cal.parse(match.group(1).strip(), now.timetuple())
            if parse_status > 0:
                parsed = datetime(*time_struct[:6]).replace(tzinfo=now.tzinfo)
                # date-only results carry the reference time of day
                return self._end_of_day(parsed) if parse_status == 1 else parsed

        return None

    def _assignee_name(self, body: str, members: Sequence[User]) -> Optional[str]:
        for pattern in (self.greeting, self.direct_address):
            match = pattern.search(body)
            if match:
                return match.group(1)

        lowered = body.lower()
        mentioned: List[str] = [m.name for m in members if m.name and m.name.lower() in lowered]
        return mentioned[0] if mentioned else None
