"""FleetCall 시그널링 허브 서버.

작업지시 단위 다자간 통화를 위한 시그널링 허브를 제공합니다. 미디어는
참가자 간 풀메시 P2P로 직접 흐르며, 이 서버는 룸 참가 추적과 SDP/ICE 중계만
담당합니다.

주요 기능:
    - 작업지시 룸 참가자 추적 (room:state, peer:joined, peer:left)
    - 룸 인원 조회 및 변경 알림 (room:status, room:count)
    - signal:offer / signal:answer / signal:ice-candidate 중계
    - CORS 설정을 통한 크로스 오리진 요청 지원

Architecture:
    - SignalingHub: 연결/룸/메시지 중계 (fleetcall.hub)
    - routes/signaling.py: FastAPI WebSocket 어댑터
    - routes/health.py: 상태 확인
"""
import glob
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Load 환경변수 from config/.env
load_dotenv(Path(__file__).parent / "config" / ".env")

from fleetcall.hub import SignalingHub  # noqa: E402
from routes import health_router, signaling_router, init_signaling_hub  # noqa: E402

# 로그 설정
os.makedirs("logs", exist_ok=True)
log_filename = f"logs/server_{datetime.now().strftime('%Y%m%d')}.log"

# 환경별 로그 레벨 설정 (환경변수로 제어)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ENV = os.getenv("ENV", "development")

# 로그 보관 기간 (일) - 기본 60일
LOG_RETENTION_DAYS = int(os.getenv("LOG_RETENTION_DAYS", "60"))


def cleanup_old_logs(log_dir: str = "logs", retention_days: int = LOG_RETENTION_DAYS) -> int:
    """오래된 로그 파일을 삭제합니다.

    Args:
        log_dir: 로그 디렉토리 경로
        retention_days: 보관 기간 (일)

    Returns:
        삭제된 파일 수
    """
    if not os.path.exists(log_dir):
        return 0

    cutoff_date = datetime.now() - timedelta(days=retention_days)
    deleted_count = 0

    for log_file in glob.glob(os.path.join(log_dir, "server_*.log")):
        try:
            date_str = os.path.basename(log_file).replace("server_", "").replace(".log", "")
            file_date = datetime.strptime(date_str, "%Y%m%d")
            if file_date < cutoff_date:
                os.remove(log_file)
                deleted_count += 1
        except (ValueError, OSError):
            continue

    return deleted_count


logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(),  # 콘솔 출력
        logging.FileHandler(log_filename, encoding="utf-8"),  # 파일 저장
    ]
)
logger = logging.getLogger(__name__)
logger.info(f"로깅 초기화 완료: level={LOG_LEVEL}, env={ENV}")

# 글로벌 허브 인스턴스
hub = SignalingHub()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI 앱의 생명주기를 관리하는 컨텍스트 매니저.

    Note:
        - 시작: 오래된 로그 정리
        - 종료: 남은 연결 정리
    """
    logger.info("[Hub] 시그널링 허브 시작 중...")

    deleted_logs = cleanup_old_logs()
    if deleted_logs > 0:
        logger.info(f"오래된 로그 파일 {deleted_logs}개 정리 완료 ({LOG_RETENTION_DAYS}일 이상)")

    yield

    logger.info("[Hub] 서버 종료 중...")
    for connection_id in list(hub.connections):
        await hub.disconnect(connection_id)


app = FastAPI(title="FleetCall Signaling Hub", lifespan=lifespan)

# CORS - 개발 환경에서는 로컬 네트워크 허용
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"^http://(localhost|127\.0\.0\.1|192\.168\.\d{1,3}\.\d{1,3}|172\.\d{1,3}\.\d{1,3}\.\d{1,3}):\d+$|^https://.*\.ngrok(-free)?\.(app|dev|io)$|^https://.*\.trycloudflare\.com$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 라우터 등록
app.include_router(health_router)
app.include_router(signaling_router)

# WebSocket 시그널링 라우터에 허브 인스턴스 전달
init_signaling_hub(hub)


@app.get("/")
async def root():
    """서버 상태 확인 엔드포인트 (Health check).

    Returns:
        dict: {"status": "ok", "service": "FleetCall Signaling Hub"}
    """
    return {"status": "ok", "service": "FleetCall Signaling Hub"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")), log_level="info")
