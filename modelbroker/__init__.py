"""modelbroker - share one local language model between many local users.

A Unix socket server that multiplexes client sessions onto a single
inference backend (a llama.cpp chat process or a vLLM completion service).
"""
