"""核心层：进程句柄、通道编解码、session、registry 与 dispatcher。"""
