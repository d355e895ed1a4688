"""Celery configuration for the durable webhook delivery queue."""

from kombu import Exchange, Queue

# ==============================================================================
# BROKER & BACKEND CONFIGURATION
# ==============================================================================

# Connection settings
broker_connection_retry_on_startup = True
broker_connection_retry = True
broker_connection_max_retries = 10

# Connection pooling for better performance
broker_pool_limit = 10
broker_heartbeat = 30  # Seconds between heartbeats to detect connection issues

result_expires = 3600  # Results expire after 1 hour

# ==============================================================================
# TASK EXECUTION SETTINGS
# ==============================================================================

# ACK after the attempt is recorded, requeue if the worker dies mid-delivery
task_acks_late = True
task_reject_on_worker_lost = True
worker_prefetch_multiplier = 1

task_track_started = True

# Serialization
task_serializer = "json"
accept_content = ["json"]  # Only accept JSON, prevent pickle attacks
result_serializer = "json"
timezone = "UTC"
enable_utc = True

# Retries are scheduled explicitly by the delivery task with its own backoff
task_max_retries = 0

# ==============================================================================
# QUEUE DEFINITIONS
# ==============================================================================

default_exchange = Exchange("default", type="direct", durable=True)
webhook_exchange = Exchange("webhooks", type="direct", durable=True)

task_queues = (
    Queue(
        "default",
        exchange=default_exchange,
        routing_key="default",
        durable=True,
    ),
    # Deliveries, including delayed retries
    Queue(
        "webhook_queue",
        exchange=webhook_exchange,
        routing_key="webhook.deliver",
        durable=True,
    ),
)

task_default_queue = "default"
task_default_exchange = "default"
task_default_routing_key = "default"

# ==============================================================================
# TASK ROUTING
# ==============================================================================

task_routes = {
    "deliver_webhook": {
        "queue": "webhook_queue",
        "routing_key": "webhook.deliver",
    },
}

# ==============================================================================
# WORKER CONFIGURATION
# ==============================================================================

# Deliveries are I/O bound
worker_concurrency = 8
worker_max_tasks_per_child = 1000  # Restart worker after 1000 tasks to prevent memory leaks

worker_send_task_events = True
task_send_sent_event = True
worker_log_format = "[%(asctime)s: %(levelname)s/%(processName)s] %(message)s"
worker_task_log_format = "[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s"

# ==============================================================================
# MESSAGE PERSISTENCE
# ==============================================================================

task_default_delivery_mode = 2  # 2 = persistent, 1 = transient
result_persistent = True

# ==============================================================================
# TASK ANNOTATIONS (task-specific overrides)
# ==============================================================================

task_annotations = {
    "deliver_webhook": {
        # Each attempt has its own HTTP timeout; this bounds the whole task
        "time_limit": 60,
        "soft_time_limit": 45,
    },
}

task_protocol = 2
