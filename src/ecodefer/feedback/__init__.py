"""Feedback: outcome annotations and learned patterns."""

from ecodefer.feedback.learning import Feedback, FeedbackLoop, LearnedPattern

__all__ = ["Feedback", "FeedbackLoop", "LearnedPattern"]
