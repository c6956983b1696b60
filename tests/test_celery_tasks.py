"""Celery 任务与手动清理脚本单元测试"""
import pytest
from unittest.mock import Mock, patch

from celery_app import app as celery_app
from storefront.core.config import settings
from storefront.jobs import manual_sweep
from tasks.reservation_tasks import (
    sweep_expired_reservations,
    release_reservation,
)


class TestReservationTasks:
    """预占 Celery 任务测试类"""

    def test_sweep_expired_reservations_success(self):
        """测试清理过期预占任务成功"""
        service_mock = Mock()
        service_mock.sweep_expired.return_value = 5
        db_mock = Mock()

        with patch('tasks.reservation_tasks.SessionLocal') as mock_session_local, \
             patch('tasks.reservation_tasks.ReservationService') as mock_service_cls:

            mock_session_local.return_value = db_mock
            mock_service_cls.return_value = service_mock

            result = sweep_expired_reservations(100)

            assert result == "成功清理 5 条过期预占记录"
            service_mock.sweep_expired.assert_called_once_with(100)
            db_mock.close.assert_called_once()

    def test_sweep_expired_reservations_exception(self):
        """测试清理任务异常时回滚并重新抛出"""
        db_mock = Mock()

        with patch('tasks.reservation_tasks.SessionLocal') as mock_session_local, \
             patch('tasks.reservation_tasks.ReservationService') as mock_service_cls:

            mock_session_local.return_value = db_mock
            mock_service_cls.return_value.sweep_expired.side_effect = Exception("数据库错误")

            with pytest.raises(Exception) as exc_info:
                sweep_expired_reservations()

            assert "数据库错误" in str(exc_info.value)
            db_mock.rollback.assert_called_once()
            db_mock.close.assert_called_once()

    def test_release_reservation(self):
        """测试异步释放预占"""
        db_mock = Mock()

        with patch('tasks.reservation_tasks.SessionLocal') as mock_session_local, \
             patch('tasks.reservation_tasks.ReservationService') as mock_service_cls:

            mock_session_local.return_value = db_mock
            mock_service_cls.return_value.release.return_value = True

            result = release_reservation(1, "alice")

            assert result == {"product_id": 1, "actor_id": "alice", "released": True}
            mock_service_cls.return_value.release.assert_called_once_with(1, "alice")
            db_mock.close.assert_called_once()

    def test_task_names_and_routes(self):
        """测试任务名称与队列路由"""
        assert sweep_expired_reservations.name == 'tasks.reservations.sweep_expired'
        assert release_reservation.name == 'tasks.reservations.release'
        assert celery_app.conf.task_routes['tasks.reservations.*'] == {'queue': 'reservations'}

    def test_beat_schedule(self):
        """测试定时清理配置"""
        entry = celery_app.conf.beat_schedule['sweep-expired-reservations']

        assert entry['task'] == 'tasks.reservations.sweep_expired'
        assert entry['schedule'] == float(settings.SWEEP_INTERVAL_SECONDS)
        assert entry['args'] == (settings.SWEEP_BATCH_SIZE,)


class TestManualSweep:
    """手动清理脚本测试类"""

    def test_run_sweep(self):
        """测试实际执行清理"""
        db_mock = Mock()

        with patch('storefront.jobs.manual_sweep.ReservationService') as mock_service_cls:
            mock_service_cls.return_value.sweep_expired.return_value = 7

            count = manual_sweep.run_sweep(200, session_factory=lambda: db_mock, redis=None)

        assert count == 7
        mock_service_cls.return_value.sweep_expired.assert_called_once_with(200)
        db_mock.close.assert_called_once()

    def test_run_sweep_dry_run(self):
        """测试试运行只统计不清理"""
        db_mock = Mock()

        with patch('storefront.jobs.manual_sweep.ReservationService') as mock_service_cls:
            mock_service_cls.return_value.count_sweepable.return_value = 4

            count = manual_sweep.run_sweep(dry_run=True, session_factory=lambda: db_mock, redis=None)

        assert count == 4
        mock_service_cls.return_value.sweep_expired.assert_not_called()

    def test_run_sweep_against_database(self, db_session, make_product, clock):
        """测试脚本通过服务清理真实数据"""
        from storefront.services.reservation_service import ReservationService

        product = make_product()
        ReservationService(db_session, clock=clock).reserve(product.id, "alice")

        with patch('storefront.jobs.manual_sweep.ReservationService') as mock_service_cls:
            clock.advance(minutes=20)
            mock_service_cls.side_effect = lambda db, redis: ReservationService(db, redis, clock=clock)

            assert manual_sweep.run_sweep(session_factory=lambda: db_session, redis=None) == 1

    def test_main_success(self, capsys):
        """测试命令行入口"""
        with patch('storefront.jobs.manual_sweep.run_sweep', return_value=3) as mock_run:
            exit_code = manual_sweep.main(["--batch-size", "50"])

        assert exit_code == 0
        mock_run.assert_called_once_with(50, False)
        assert "处理了 3 条记录" in capsys.readouterr().out

    def test_main_dry_run(self, capsys):
        """测试命令行试运行"""
        with patch('storefront.jobs.manual_sweep.run_sweep', return_value=2):
            exit_code = manual_sweep.main(["--dry-run", "--verbose"])

        assert exit_code == 0
        assert "发现 2 条过期记录" in capsys.readouterr().out

    def test_main_failure(self, capsys):
        """测试执行失败返回非零"""
        with patch('storefront.jobs.manual_sweep.run_sweep', side_effect=Exception("连接失败")):
            exit_code = manual_sweep.main([])

        assert exit_code == 1
        assert "执行失败" in capsys.readouterr().out
