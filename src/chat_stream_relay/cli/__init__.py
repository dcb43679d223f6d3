"""chat-stream-relay 命令行入口。"""
