"""Import all models so SQLAlchemy metadata knows about them."""
from voicerelay.models.base import Base
from voicerelay.models.device_token import DeviceToken
from voicerelay.models.recording import Recording
from voicerelay.models.github_link import GithubLink
from voicerelay.models.job import Job

__all__ = ["Base", "DeviceToken", "Recording", "GithubLink", "Job"]
