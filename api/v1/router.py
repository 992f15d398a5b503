"""
API v1 路由汇总
"""

from fastapi import APIRouter

from api.v1.hosts import router as hosts_router
from api.v1.system import router as system_router
from api.v1.tasks import router as tasks_router
from api.v1.terminal import router as terminal_router

router = APIRouter(prefix="/api/v1")

# 注册子路由
router.include_router(system_router)
router.include_router(hosts_router)
router.include_router(tasks_router)
router.include_router(terminal_router)
