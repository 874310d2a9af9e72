"""Routes, metric names, context keys and other shared constants."""

API_BASE = "/api/v3"
API_VERSION = "v3"
API_PING_ROUTE = API_BASE + "/ping"
API_VERSION_ROUTE = API_BASE + "/version"
API_CONFIG_ROUTE = API_BASE + "/config"
API_TRIGGER_ROUTE = API_BASE + "/trigger"
API_ADD_SECRET_ROUTE = API_BASE + "/secret"

CORRELATION_HEADER = "X-Correlation-ID"
CONTENT_TYPE_HEADER = "Content-Type"
CONTENT_TYPE_JSON = "application/json"
CONTENT_TYPE_CBOR = "application/cbor"
CONTENT_TYPE_XML = "application/xml"
CONTENT_TYPE_TEXT = "text/plain"

CORE_METADATA_SERVICE_KEY = "core-metadata"

# Version of the SDK and of the application; overwritten at build or start-up time.
SDK_VERSION = "0.0.0"
APPLICATION_VERSION = "0.0.0"

# Keys under which values are stored in a pipeline function context.
PIPELINE_ID_KEY = "pipelineid"
DEVICE_NAME_KEY = "devicename"
PROFILE_NAME_KEY = "profilename"
SOURCE_NAME_KEY = "sourcename"
RECEIVED_TOPIC_KEY = "receivedtopic"

DEFAULT_PIPELINE_ID = "default-pipeline"

# Names for the common application service metrics.
MESSAGES_RECEIVED_NAME = "MessagesReceived"
INVALID_MESSAGES_RECEIVED_NAME = "InvalidMessagesReceived"
PIPELINE_ID_TXT = "{PipelineId}"
PIPELINE_MESSAGES_PROCESSED_NAME = "PipelineMessagesProcessed-" + PIPELINE_ID_TXT
PIPELINE_MESSAGE_PROCESSING_TIME_NAME = "PipelineMessageProcessingTime-" + PIPELINE_ID_TXT
PIPELINE_PROCESSING_ERRORS_NAME = "PipelineProcessingErrors-" + PIPELINE_ID_TXT
HTTP_EXPORT_SIZE_NAME = "HttpExportSize"
MQTT_EXPORT_SIZE_NAME = "MqttExportSize"
MESSAGE_BUS_SUBSCRIBE_TOPICS = "SubscribeTopics"
MESSAGE_BUS_PUBLISH_TOPIC = "PublishTopic"

# Default size of a metrics sample reservoir.
METRICS_RESERVOIR_SIZE = 1028


def pipeline_metric_name(template: str, pipeline_id: str) -> str:
    """Return the metric name for a pipeline by filling in the first pipeline id placeholder."""
    return template.replace(PIPELINE_ID_TXT, pipeline_id, 1)