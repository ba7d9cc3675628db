"""
本地启动入口: python -m visitor_tracker
"""
import uvicorn

from visitor_tracker.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "visitor_tracker.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
