"""包内静态资源（default.yaml）。"""
