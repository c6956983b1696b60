"""Celery 配置文件"""

from celery import Celery

from storefront.core.config import settings

# 创建 Celery 应用实例
app = Celery('reservation_worker', include=['tasks.reservation_tasks'])

# 配置 Redis 作为 broker 和 backend
app.conf.broker_url = f"redis://{settings.REDIS_HOST}:{settings.REDIS_PORT}/1"
app.conf.result_backend = f"redis://{settings.REDIS_HOST}:{settings.REDIS_PORT}/2"

# 任务序列化配置
app.conf.task_serializer = 'json'
app.conf.result_serializer = 'json'
app.conf.accept_content = ['json']

# 时区配置（预占到期时间一律按 UTC 计算）
app.conf.timezone = 'UTC'
app.conf.enable_utc = True

# 任务路由配置
app.conf.task_routes = {
    'tasks.reservations.*': {'queue': 'reservations'},
}

# 定时清理过期预占
app.conf.beat_schedule = {
    'sweep-expired-reservations': {
        'task': 'tasks.reservations.sweep_expired',
        'schedule': float(settings.SWEEP_INTERVAL_SECONDS),
        'args': (settings.SWEEP_BATCH_SIZE,),
    },
}

# Worker 配置
app.conf.worker_prefetch_multiplier = 1
app.conf.task_acks_late = True

# 导出应用实例
__all__ = ['app']
