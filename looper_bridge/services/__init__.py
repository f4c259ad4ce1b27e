# Device-connectivity core for the looper bridge
# - status_codec:   compact binary status frame + tagged text commands
# - discovery:      identity query broadcast/unicast and command sends
# - health_monitor: connection state machine (pure transition function)
# - device_link:    UDP endpoint and the single ordered event stream
# - status_hub:     last-known status and subscriber fan-out
