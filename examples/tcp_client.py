#!/usr/bin/env python3
"""Connect to a PM-LITE TCP source and print telemetry values.

Run the simulator first:
    python examples/tcp_source.py    # serves on localhost:4200

Then in another terminal:
    python examples/tcp_client.py
"""

import threading

from pmlite.messages import TelemetryMessage
from pmlite.session import Session

session = Session()
done = threading.Event()


@session.message_received.connect
def on_message(message):
    if isinstance(message, TelemetryMessage):
        mrs = "ON" if message.mrs_on else "off"
        print(f"itm={message['itm']:.2f}  gyro_temp={message['gyro_temp']:.2f}  MRS={mrs}")
    else:
        print(f"{message.label}: {message.summary()}")


session.warning.connect(lambda text: print(f"warning: {text}"))
session.disconnected.connect(done.set)
session.connect("localhost", 4200)

try:
    while not done.wait(0.5):
        pass
except KeyboardInterrupt:
    pass
finally:
    session.disconnect()
