# 默认参数集中放在这里，各模块的 dataclass 配置以此为默认值，CLI 参数再覆盖。

# Matching: Euclidean distance between face descriptors (lower = more similar).
# 0.6 is the production policy; 0.4 is the stricter alternative kept for tuning.
# 注意：InsightFace 的 512 维单位向量（normed_embedding）同一人的距离通常在 0.8~1.1，
# 使用默认阈值时大部分真实抓拍会被判为 unknown；部署时一般用 -t 1.0 左右。
DEFAULT_MATCH_THRESHOLD = 0.6
STRICT_MATCH_THRESHOLD = 0.4
UNKNOWN_LABEL = "unknown"

# Capture scheduling (seconds)
DETECT_INTERVAL_SECONDS = 1.5
# Simple capture mode: unconditional capture + upload, no existence check.
CAPTURE_INTERVAL_SECONDS = 5.0

# InsightFace options
INSIGHTFACE_MODEL = "buffalo_l"
INSIGHTFACE_DET_SIZE = 640
# Faces below this detector score are ignored by both detection passes.
MIN_DET_SCORE = 0.5

# Reference photos
REFERENCE_IMAGE_SUFFIXES = (".jpg", ".jpeg", ".png")
REFERENCE_CACHE_FILENAME = "reference_descriptors.pkl"
REFERENCE_CACHE_SCHEMA = "v1"
REFERENCE_FETCH_TIMEOUT = 15.0

# Upload sink
UPLOAD_TIMEOUT = 30.0
UPLOAD_IMAGE_FORMAT = ".png"
UPLOAD_POLICIES = ("never", "always", "on_face", "on_unknown")
DEFAULT_UPLOAD_POLICY = "always"
