"""
集成测试（integration tests）

说明：
- 该目录下的测试启动本地临时 HTTP server，分别模拟 Doma poll API 与 Telegram Bot API。
- 被测代码走真实的 HttpClient/urllib 网络栈，不 mock urlopen。
"""
