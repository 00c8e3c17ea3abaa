"""
預覽解析預設常數

所有值都可以透過 PreviewConfig（環境變數）覆寫
"""

# ─────────────────────────────────────────────────────────
#  快取
# ─────────────────────────────────────────────────────────
CACHE_DIR = "./cache/audio"
CACHE_TTL = 7 * 24 * 60 * 60          # 7 天（秒）
CACHE_JSON_FILE = "music-cache.json"
CACHE_CSV_FILE = "music-cache.csv"

# ─────────────────────────────────────────────────────────
#  併發控制
# ─────────────────────────────────────────────────────────
MAX_PARALLEL = 5

# ─────────────────────────────────────────────────────────
#  搜尋 / 擷取
# ─────────────────────────────────────────────────────────
YTDLP_PATH = "yt-dlp"
YTDLP_SEARCH_TIMEOUT = 20
YTDLP_EXTRACT_TIMEOUT = 30
YTDLP_PROCESS_START_TIMEOUT = 5
SEARCH_LIMIT = 3
SEARCH_KEYWORDS = "audio official"
ARTIST_SEARCH_SUFFIX = "popular song"
FALLBACK_USER_AGENT = "Mozilla/5.0"

# 嵌入播放器的預覽視窗
EMBED_PLATFORM = "youtube"
PREVIEW_LENGTH = 30
PREVIEW_START_MIN = 15
PREVIEW_START_MAX = 50
EMBED_FALLBACK = True

# ─────────────────────────────────────────────────────────
#  代理
# ─────────────────────────────────────────────────────────
PROXY_ENABLED = False
PROXY_CACHE_PATH = "./data/proxy-cache.json"
PROXY_SOURCES = (
    "https://www.proxy-list.download/api/v1/get?type=http",
    "https://api.proxyscrape.com/v2/?request=getproxies&protocol=http&timeout=10000&country=all",
    "https://raw.githubusercontent.com/TheSpeedX/PROXY-List/master/http.txt",
    "https://raw.githubusercontent.com/ShiftyTR/Proxy-List/master/http.txt",
    "https://raw.githubusercontent.com/clarketm/proxy-list/master/proxy-list.txt",
)
PROXY_SOURCE_TIMEOUT = 10
PROXY_REFRESH_INTERVAL = 30 * 60      # 30 分鐘（秒）
PROXY_MIN_POOL_SIZE = 20
PROXY_TEST_URL = "https://www.google.com"
PROXY_TEST_TIMEOUT = 5
PROXY_TEST_MAX_COUNT = 50
PROXY_TEST_BATCH_SIZE = 10
PROXY_MAX_RETRIES = 3

# ─────────────────────────────────────────────────────────
#  批次預載
# ─────────────────────────────────────────────────────────
PRELOAD_MAX_BATCH_SIZE = 10
PRELOAD_BATCH_PAUSE = 0.1             # 批次之間的停頓（秒）

# ─────────────────────────────────────────────────────────
#  單一解析任務時限
# ─────────────────────────────────────────────────────────
EXTRACTION_STRATEGY_COUNT = 3
# 最壞情況：每次嘗試 = 一次搜尋 + 每個擷取策略各一次，共 PROXY_MAX_RETRIES + 1 次嘗試
TASK_TIMEOUT = (PROXY_MAX_RETRIES + 1) * (
    YTDLP_SEARCH_TIMEOUT + EXTRACTION_STRATEGY_COUNT * YTDLP_EXTRACT_TIMEOUT
)                                     # 0 表示不限制
