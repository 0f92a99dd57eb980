"""All magic numbers and configuration constants."""

SURFACE_WIDTH = 720                 # px: output surface (9:16 portrait)
SURFACE_HEIGHT = 1280               # px
CAPTURE_FPS = 30                    # frames per second for render loop and capture sink
VIDEO_BITRATE = "8000k"             # 8 Mbps capture bitrate
BACKGROUND_RGB = (0, 0, 0)          # surface clear colour (letterbox bars)
MIX_SAMPLE_RATE = 48000             # Hz: audio graph mix rate
MIX_CHANNELS = 2                    # audio graph mix channel count
COMPLETION_TOLERANCE = 0.05         # seconds: position backstop slack for float/timer drift
DURATION_DIVERGENCE_WARN = 0.5      # seconds: normalized vs original speech duration
FETCH_TIMEOUT = 30.0                # seconds: asset byte fetch
NORMALIZATION_TIMEOUT = 120.0       # seconds: voice conversion request
DEFAULT_F0_METHOD = "rmvpe"         # pitch extraction method sent to the conversion service
DEFAULT_INDEX_RATE = 0.66           # retrieval blend ratio (0.0–1.0)
NO_GESTURE = "none"                 # gesture tag that never carries a video
GESTURE_TYPES = ("none", "beat", "deictic", "iconic", "metaphoric")
STATUS_COMPLETED = "completed"
SEGMENT_STATUSES = ("idle", "generating", "completed", "error")

# Ordered capture preferences: (mime type, container extension, video encoder, audio encoder).
# Single-file MP4/H.264 first, WebM alternates after.
CODEC_PREFERENCES = [
    ("video/mp4;codecs=avc1.42E01E,mp4a.40.2", "mp4", "libx264", "aac"),
    ("video/mp4;codecs=h264,aac", "mp4", "libopenh264", "aac"),
    ("video/mp4", "mp4", "mpeg4", "aac"),
    ("video/webm;codecs=vp9,opus", "webm", "libvpx-vp9", "libopus"),
    ("video/webm;codecs=vp8,opus", "webm", "libvpx", "libopus"),
    ("video/webm;codecs=vp8,vorbis", "webm", "libvpx", "libvorbis"),
]

OUTPUT_DIR = "output"
OUTPUT_PREFIX = "rehearsal-composed"
VERSION = "0.1.0"
