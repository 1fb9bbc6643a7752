"""Local activity tracker that merges window samples into sessions and classifies them into projects."""

__version__ = "0.1.0"
