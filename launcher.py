#!/usr/bin/env python3
"""
生成工作台启动器
用于在打包的 macOS .app 中启动 Streamlit 应用

- PyInstaller 打包后，sys.executable 指向冻结二进制，不能当 Python 用
- 所以直接在进程内调用 Streamlit 的 CLI 入口
"""
import os
import sys
import threading
import time
import webbrowser
from pathlib import Path


def _get_base_path() -> Path:
    """获取资源根目录（兼容 PyInstaller 打包环境和开发环境）"""
    if getattr(sys, "frozen", False):
        return Path(sys._MEIPASS)
    return Path(__file__).parent


def _get_workspace_path() -> Path:
    """数据和生成结果放在用户目录，打包目录是只读的"""
    return Path(os.getenv("GS_WORKSPACE", str(Path.home() / "GenStudio"))).expanduser()


def _setup_environment(workspace: Path) -> None:
    workspace.mkdir(parents=True, exist_ok=True)
    os.environ.setdefault("GS_BASE_DIR", str(workspace))
    os.environ.setdefault("GS_DATA_DIR", str(workspace / "data"))
    os.environ.setdefault("GS_PUBLIC_DIR", str(workspace / "public"))


def _open_browser_later(url: str, delay: float = 4.0) -> None:
    """后台线程延迟打开浏览器"""
    def _open():
        time.sleep(delay)
        webbrowser.open(url)
    threading.Thread(target=_open, daemon=True).start()


def build_streamlit_argv(app_script: str, port: str) -> list[str]:
    return [
        "streamlit", "run", app_script,
        "--server.port", port,
        "--server.headless", "true",
        "--server.fileWatcherType", "none",
        "--browser.gatherUsageStats", "false",
        "--global.developmentMode", "false",
    ]


def main() -> None:
    base_path = _get_base_path()
    _setup_environment(_get_workspace_path())

    app_script = str(base_path / "app.py")
    if not Path(app_script).exists():
        print(f"错误：找不到应用入口 {app_script}")
        sys.exit(1)

    port = os.getenv("GS_PORT", "8501")
    _open_browser_later(f"http://localhost:{port}")

    sys.argv = build_streamlit_argv(app_script, port)

    from streamlit.web.cli import main as st_main  # noqa: E402
    st_main()


if __name__ == "__main__":
    main()
