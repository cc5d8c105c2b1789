"""Analysis orchestration for locally stored AI-assistant conversations.

The queue lives in the same SQLite file as the conversations it refers to.
One process claims a batch, ships it to whichever backend the user allowed
(a local CLI tool or a remote structured-generation API), and writes every
claimed item back as completed or failed before the cycle returns. A
separate broker would add a service to run for a tool that never leaves a
single machine.
"""
