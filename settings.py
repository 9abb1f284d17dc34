import os

# Bluetooth adapter used for the peripheral (BlueZ object path suffix)
ADAPTER = os.getenv("GATT_ADAPTER", "hci0")

# Name put into the advertisement (LocalName)
DEVICE_NAME = os.getenv("GATT_DEVICE_NAME", "GATT-Peripheral")

# D-Bus object path under which the application and advertisement live
OBJECT_ROOT = os.getenv("GATT_OBJECT_ROOT", "/org/bluez/gattserver")

# Seconds to wait for BlueZ to answer RegisterApplication / RegisterAdvertisement
REGISTRATION_TIMEOUT = float(os.getenv("GATT_REGISTRATION_TIMEOUT", "10"))

# Seconds to wait after powering on the adapter
ADAPTER_POWER_ON_DELAY = 1.0

# Advertisement defaults
ADVERTISE_ENABLED = True
ADVERTISEMENT_TYPE = "peripheral"  # Options: "peripheral" or "broadcast"
ADVERTISING_MIN_INTERVAL = 100  # ms
ADVERTISING_MAX_INTERVAL = 500  # ms
MANUFACTURER_ID = 0xFFFF  # Reserved company ID for testing

# Logging configuration
LOG_DIR = os.getenv("GATT_LOG_DIR", "/var/log/gattserver")
LOG_LEVEL = os.getenv("GATT_LOG_LEVEL", "INFO")
LOG_MAX_BYTES = 5_000_000
LOG_BACKUP_COUNT = 3

# Demo services: seconds between value updates (0 disables the timer)
BATTERY_UPDATE_INTERVAL = 10
COUNTER_UPDATE_INTERVAL = 5
