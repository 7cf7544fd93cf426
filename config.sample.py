# Harmony Hub Configuration Template
# Rename this file to 'config.py' and fill in your details

# HUB Connection Details
HUB_IP = "192.168.1.X"      # Your Harmony Hub IP Address (see your router's DHCP table)

# Diagnostic output: "off", "error", "info" or "verbose"
LOG_LEVEL = "off"

# Session tunables (all optional, see harmony_hub.config.SessionConfig)
SESSION = {
    "command_timeout": 10.0,      # seconds to wait for a command reply
    "activity_timeout": 30.0,     # starting an activity can take a while
    "max_queued_commands": 16,    # commands accepted before the hub is ready
    "button_error_window": 0.5,   # seconds to listen for a hub error after a button action
    "refresh_interval": 300.0,    # periodic state refresh, None to disable
}
