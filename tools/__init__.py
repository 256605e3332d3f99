"""
ONIONSIM Tools — operator commands for a simulated onion network.

Tools:
  nodes     — List relays registered with a registry
  send      — Ask a running user service to send a message
  simulate  — Run a whole network in-process and send one message
  launch    — Start registry, relays and users as HTTP services in one process

Usage:
  python -m tools.cli nodes
  python -m tools.cli send --from 0 --to 1 --message "hello"
  python -m tools.cli simulate --nodes 5 --path 2 0 4
  python -m tools.cli launch --nodes 5 --users 0 1
"""
