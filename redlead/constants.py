"""Queue names, job names and schedules shared by the API and worker processes."""

# Queue names
LEAD_DISCOVERY_QUEUE = "lead-discovery"
SUBREDDIT_ANALYSIS_QUEUE = "subreddit-analysis"
REPLY_TRACKING_QUEUE = "reply-tracking"
PERFORMANCE_TRACKING_QUEUE = "performance-tracking"
MARKET_INSIGHT_QUEUE = "market-insight"
TRIAL_EXPIRATION_QUEUE = "trial-expiration"

ALL_QUEUES = (
    LEAD_DISCOVERY_QUEUE,
    SUBREDDIT_ANALYSIS_QUEUE,
    REPLY_TRACKING_QUEUE,
    PERFORMANCE_TRACKING_QUEUE,
    MARKET_INSIGHT_QUEUE,
    TRIAL_EXPIRATION_QUEUE,
)

# Queue defaults
DEFAULT_JOB_ATTEMPTS = 3
DEFAULT_JOB_BACKOFF_SECONDS = 1.0
DEFAULT_JOB_PRIORITY = 3
KEEP_COMPLETED_JOBS = 100
KEEP_COMPLETED_SECONDS = 24 * 3600
KEEP_FAILED_JOBS = 500

# Cron patterns (minute hour day month weekday)
EVERY_MINUTE = "* * * * *"
EVERY_15_MINUTES = "*/15 * * * *"
HOURLY = "0 * * * *"
HOURLY_AT_5 = "5 * * * *"
DAILY_AT_2AM = "0 2 * * *"
DAILY_AT_3AM = "0 3 * * *"
