"""
Analytics computations run by the analytics lane.

The feedback documents live in the web application's database; this service
reads and writes them through a FeedbackSource so it can run against any
backing store (the in-memory source serves development and tests).
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from core.exceptions import MissingResourceError, TransientHandlerError

logger = logging.getLogger(__name__)

POSITIVE_MIN_RATING = 4
NEGATIVE_MAX_RATING = 2


@dataclass
class FeedbackItem:
    """The fields of a feedback document analytics needs."""

    feedback_id: str
    course_id: str
    rating: int
    message: str = ""
    sentiment: str = "neutral"


class FeedbackSource(ABC):
    """Read/write access to feedback documents and course aggregates."""

    @abstractmethod
    def list_feedback(self, sentiment: Optional[str] = None) -> List[FeedbackItem]:
        ...

    @abstractmethod
    def set_sentiment(self, feedback_id: str, sentiment: str) -> None:
        """
        Raises:
            MissingResourceError: the feedback was deleted
        """

    @abstractmethod
    def set_course_average(self, course_id: str, average: float, count: int) -> None:
        ...


class InMemoryFeedbackSource(FeedbackSource):
    def __init__(self, items: Optional[List[FeedbackItem]] = None):
        self._items: Dict[str, FeedbackItem] = {item.feedback_id: item for item in items or []}
        self.course_averages: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def add(self, item: FeedbackItem) -> None:
        with self._lock:
            self._items[item.feedback_id] = item

    def remove(self, feedback_id: str) -> None:
        with self._lock:
            self._items.pop(feedback_id, None)

    def list_feedback(self, sentiment: Optional[str] = None) -> List[FeedbackItem]:
        with self._lock:
            return [
                item for item in self._items.values()
                if sentiment is None or item.sentiment == sentiment
            ]

    def set_sentiment(self, feedback_id: str, sentiment: str) -> None:
        with self._lock:
            item = self._items.get(feedback_id)
            if item is None:
                raise MissingResourceError(
                    f"Feedback {feedback_id} not found", details={"feedback_id": feedback_id}
                )
            item.sentiment = sentiment

    def set_course_average(self, course_id: str, average: float, count: int) -> None:
        with self._lock:
            self.course_averages[course_id] = {"average": average, "count": count}


def classify_rating(rating: int) -> str:
    """Sentiment label derived from a 1..5 rating."""
    if rating >= POSITIVE_MIN_RATING:
        return "positive"
    if rating <= NEGATIVE_MAX_RATING:
        return "negative"
    return "neutral"


class AnalyticsService:
    """
    Runs the analytics tasks.

    Tasks:
    - updateSentiment: label feedback still marked "neutral" from its rating
    - updateCourseAvg: recompute the average rating of every course
    """

    def __init__(self, source: FeedbackSource):
        self._source = source

    @property
    def source(self) -> FeedbackSource:
        return self._source

    def update_sentiment(self) -> Dict[str, Any]:
        labelled: Dict[str, int] = defaultdict(int)
        skipped = 0
        for item in self._source.list_feedback(sentiment="neutral"):
            label = classify_rating(item.rating)
            if label == "neutral":
                continue
            try:
                self._source.set_sentiment(item.feedback_id, label)
            except MissingResourceError:
                # Deleted between the scan and the write
                skipped += 1
                continue
            labelled[label] += 1

        logger.info(f"Sentiment update: {dict(labelled)} ({skipped} skipped)")
        return {"updated": sum(labelled.values()), "by_label": dict(labelled), "skipped": skipped}

    def update_course_averages(self) -> Dict[str, Any]:
        ratings: Dict[str, List[int]] = defaultdict(list)
        for item in self._source.list_feedback():
            ratings[item.course_id].append(item.rating)

        averages = {}
        for course_id, values in ratings.items():
            average = round(sum(values) / len(values), 2)
            self._source.set_course_average(course_id, average, len(values))
            averages[course_id] = average

        logger.info(f"Course averages updated for {len(averages)} courses")
        return {"courses": len(averages), "averages": averages}

    async def run(self, task: str) -> Dict[str, Any]:
        """
        Run a task in the default executor.

        Raises:
            ValueError: unknown task
            TransientHandlerError: the computation failed
        """
        tasks = {
            "updateSentiment": self.update_sentiment,
            "updateCourseAvg": self.update_course_averages,
        }
        if task not in tasks:
            raise ValueError(f"Unknown analytics task: {task}")

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, tasks[task])
        except MissingResourceError:
            raise
        except Exception as e:
            raise TransientHandlerError(
                f"Analytics task {task} failed: {e}", details={"task": task}
            ) from e
