DEFAULT_STEP_DELAY = 1.0
DEFAULT_DECISION_TIMEOUT = 30.0
DEFAULT_DIGITAL_WORKER = "default"
DEFAULT_EMAIL_READ_COUNT = 10
DEFAULT_CONTROL_ROOM_TOPIC = "control_room"

# Placeholder a decision may use in show_image_preview to refer to the
# image generated earlier in the same step.
GENERATED_IMAGE_PLACEHOLDER = "[generated]"
