"""过期预占清理本地执行脚本

    python -m storefront.jobs.manual_sweep --batch-size 200 --dry-run
"""

import argparse
import logging
from storefront.db.session import SessionLocal
from storefront.services.reservation_service import ReservationService
from storefront.core.redis import redis_client

logger = logging.getLogger(__name__)

def run_sweep(batch_size: int = 500, dry_run: bool = False, session_factory=SessionLocal, redis=redis_client):
    """执行过期预占清理

    Args:
        batch_size: 批处理大小
        dry_run: 是否为试运行模式（不实际执行清理）
    """
    db = session_factory()
    try:
        service = ReservationService(db, redis)
        if dry_run:
            # 试运行模式：只统计待清理记录数量
            expired_count = service.count_sweepable()
            logger.info(f"试运行模式：发现 {expired_count} 条过期预占记录待清理")
            return expired_count

        count = service.sweep_expired(batch_size)
        logger.info(f"清理完成：成功清理 {count} 条过期预占记录")
        return count

    except Exception as e:
        logger.error(f"清理执行失败: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()

def main(argv=None):
    """主函数"""
    parser = argparse.ArgumentParser(description='过期预占清理工具')
    parser.add_argument(
        '--batch-size',
        type=int,
        default=500,
        help='批处理大小 (默认: 500)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='试运行模式，只统计不执行清理'
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='详细输出模式'
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        result = run_sweep(args.batch_size, args.dry_run)
        if args.dry_run:
            print(f"📊 试运行结果：发现 {result} 条过期记录")
        else:
            print(f"✅ 清理完成：处理了 {result} 条记录")
    except Exception as e:
        print(f"❌ 执行失败: {str(e)}")
        return 1

    return 0

if __name__ == "__main__":
    exit(main())
