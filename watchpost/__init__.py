"""
watchpost - motion-triggered recording, live streaming and alerting.

A threaded Python application for:
- Capturing frames from a camera or video file through GStreamer
- Classifying motion with frame differencing and hysteresis
- Recording one video segment per motion episode with pre/post roll
- Serving the live picture to any number of HTTP viewers
- Posting a webhook alert when motion starts
"""

__version__ = "1.0.0"
