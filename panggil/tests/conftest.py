"""Pytest configuration for panggil tests.

Schemas are built in code from FileDescriptorProto so no protoc step is
needed. The ``greeter_server`` fixture runs an in-process gRPC server with
reflection enabled for tests that need a real remote.

Run tests with: pytest panggil/tests/
"""

import time
from concurrent import futures
from typing import Dict, Iterable, Optional

import grpc
import pytest
from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from grpc_reflection.v1alpha import reflection

FDP = descriptor_pb2.FieldDescriptorProto

COMMON_FILE = "ptest/common.proto"
GREETER_FILE = "ptest/greeter.proto"
MISSING_SERVICE = "ptest.Missing"


def _json_name(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def add_field(
    message: descriptor_pb2.DescriptorProto,
    name: str,
    number: int,
    field_type: int,
    type_name: Optional[str] = None,
    repeated: bool = False,
) -> None:
    """Append a field to a message proto."""
    field = message.field.add(
        name=name,
        number=number,
        type=field_type,
        label=FDP.LABEL_REPEATED if repeated else FDP.LABEL_OPTIONAL,
        json_name=_json_name(name),
    )
    if type_name:
        field.type_name = type_name


def add_map_field(
    message: descriptor_pb2.DescriptorProto,
    package: str,
    name: str,
    number: int,
) -> None:
    """Append a map<string, string> field with its synthetic entry type."""
    entry_name = "".join(part.capitalize() for part in name.split("_")) + "Entry"
    entry = message.nested_type.add(name=entry_name)
    entry.options.map_entry = True
    add_field(entry, "key", 1, FDP.TYPE_STRING)
    add_field(entry, "value", 2, FDP.TYPE_STRING)
    add_field(
        message, name, number, FDP.TYPE_MESSAGE,
        type_name=f".{package}.{message.name}.{entry_name}", repeated=True,
    )


def build_common_file() -> descriptor_pb2.FileDescriptorProto:
    fd = descriptor_pb2.FileDescriptorProto(name=COMMON_FILE, package="ptest.common", syntax="proto3")
    address = fd.message_type.add(name="Address")
    add_field(address, "street", 1, FDP.TYPE_STRING)
    add_field(address, "zip", 2, FDP.TYPE_INT32)
    return fd


def build_greeter_file() -> descriptor_pb2.FileDescriptorProto:
    fd = descriptor_pb2.FileDescriptorProto(name=GREETER_FILE, package="ptest", syntax="proto3")
    fd.dependency.append(COMMON_FILE)

    mood = fd.enum_type.add(name="Mood")
    mood.value.add(name="MOOD_UNKNOWN", number=0)
    mood.value.add(name="HAPPY", number=1)

    request = fd.message_type.add(name="HelloRequest")
    add_field(request, "name", 1, FDP.TYPE_STRING)
    add_field(request, "repeat", 2, FDP.TYPE_INT32)
    add_field(request, "active", 3, FDP.TYPE_BOOL)
    add_field(request, "token", 4, FDP.TYPE_BYTES)
    add_field(request, "tags", 5, FDP.TYPE_STRING, repeated=True)
    add_map_field(request, "ptest", "labels", 6)
    add_field(request, "address", 7, FDP.TYPE_MESSAGE, type_name=".ptest.common.Address")
    add_field(request, "mood", 8, FDP.TYPE_ENUM, type_name=".ptest.Mood")
    add_field(request, "score", 9, FDP.TYPE_DOUBLE)
    add_field(request, "user_id", 10, FDP.TYPE_STRING)

    reply = fd.message_type.add(name="HelloReply")
    add_field(reply, "message", 1, FDP.TYPE_STRING)

    simple = fd.message_type.add(name="Simple")
    add_field(simple, "name", 1, FDP.TYPE_STRING)
    add_field(simple, "repeat", 2, FDP.TYPE_INT32)

    inner = fd.message_type.add(name="Inner")
    add_field(inner, "x", 1, FDP.TYPE_INT32)
    add_field(inner, "y", 2, FDP.TYPE_INT32)

    outer = fd.message_type.add(name="Outer")
    add_field(outer, "inner", 1, FDP.TYPE_MESSAGE, type_name=".ptest.Inner")
    add_field(outer, "label", 2, FDP.TYPE_STRING)

    node = fd.message_type.add(name="TreeNode")
    add_field(node, "value", 1, FDP.TYPE_STRING)
    add_field(node, "children", 2, FDP.TYPE_MESSAGE, type_name=".ptest.TreeNode", repeated=True)
    add_field(node, "parent", 3, FDP.TYPE_MESSAGE, type_name=".ptest.TreeNode")

    fd.message_type.add(name="Empty")

    greeter = fd.service.add(name="Greeter")
    greeter.method.add(name="SayHello", input_type=".ptest.HelloRequest", output_type=".ptest.HelloReply")
    greeter.method.add(
        name="SayHelloStream", input_type=".ptest.HelloRequest",
        output_type=".ptest.HelloReply", server_streaming=True,
    )
    greeter.method.add(name="Fail", input_type=".ptest.Empty", output_type=".ptest.HelloReply")
    greeter.method.add(name="Slow", input_type=".ptest.Empty", output_type=".ptest.Empty")
    greeter.method.add(
        name="Collect", input_type=".ptest.HelloRequest",
        output_type=".ptest.HelloReply", client_streaming=True,
    )

    other = fd.service.add(name="Other")
    other.method.add(name="Ping", input_type=".ptest.Empty", output_type=".ptest.Empty")
    other.method.add(name="Walk", input_type=".ptest.TreeNode", output_type=".ptest.TreeNode")
    return fd


def build_pool() -> descriptor_pool.DescriptorPool:
    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(build_common_file().SerializeToString())
    pool.AddSerializedFile(build_greeter_file().SerializeToString())
    return pool


@pytest.fixture
def pool():
    """A descriptor pool holding the test schemas."""
    return build_pool()


@pytest.fixture
def message_type(pool):
    """Look up a test message descriptor by its short name."""
    def lookup(name: str):
        return pool.FindMessageTypeByName(f"ptest.{name}")
    return lookup


class GreeterHandlers:
    """Server-side behaviour of the test services."""

    def __init__(self, pool: descriptor_pool.DescriptorPool):
        self.classes = {
            name: message_factory.GetMessageClass(pool.FindMessageTypeByName(f"ptest.{name}"))
            for name in ("HelloRequest", "HelloReply", "Empty", "TreeNode")
        }

    def _reply(self, text: str):
        return self.classes["HelloReply"](message=text)

    def say_hello(self, request, context):
        metadata: Dict[str, str] = dict(context.invocation_metadata())
        greeting = f"Hello {request.name}"
        if "x-user" in metadata:
            greeting += f" from {metadata['x-user']}"
        return self._reply(greeting)

    def say_hello_stream(self, request, context) -> Iterable:
        for index in range(max(request.repeat, 1)):
            yield self._reply(f"Hello {request.name} #{index + 1}")

    def fail(self, request, context):
        context.abort(grpc.StatusCode.INVALID_ARGUMENT, "name is required")

    def slow(self, request, context):
        time.sleep(1.0)
        return self.classes["Empty"]()

    def collect(self, request_iterator, context):
        names = [r.name for r in request_iterator]
        return self._reply(",".join(names))

    def ping(self, request, context):
        return self.classes["Empty"]()

    def walk(self, request, context):
        return request

    def generic_handlers(self):
        def unary(fn, request, response):
            return grpc.unary_unary_rpc_method_handler(
                fn,
                request_deserializer=self.classes[request].FromString,
                response_serializer=self.classes[response].SerializeToString,
            )

        greeter = grpc.method_handlers_generic_handler("ptest.Greeter", {
            "SayHello": unary(self.say_hello, "HelloRequest", "HelloReply"),
            "SayHelloStream": grpc.unary_stream_rpc_method_handler(
                self.say_hello_stream,
                request_deserializer=self.classes["HelloRequest"].FromString,
                response_serializer=self.classes["HelloReply"].SerializeToString,
            ),
            "Fail": unary(self.fail, "Empty", "HelloReply"),
            "Slow": unary(self.slow, "Empty", "Empty"),
            "Collect": grpc.stream_unary_rpc_method_handler(
                self.collect,
                request_deserializer=self.classes["HelloRequest"].FromString,
                response_serializer=self.classes["HelloReply"].SerializeToString,
            ),
        })
        other = grpc.method_handlers_generic_handler("ptest.Other", {
            "Ping": unary(self.ping, "Empty", "Empty"),
            "Walk": unary(self.walk, "TreeNode", "TreeNode"),
        })
        return (greeter, other)


@pytest.fixture
def greeter_server():
    """Start a reflection-enabled server and yield its address.

    The advertised service list includes a service the pool does not
    define, to exercise per-service failure handling.
    """
    test_pool = build_pool()
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=4))
    server.add_generic_rpc_handlers(GreeterHandlers(test_pool).generic_handlers())
    reflection.enable_server_reflection(
        ("ptest.Greeter", MISSING_SERVICE, "ptest.Other", reflection.SERVICE_NAME),
        server,
        pool=test_pool,
    )
    port = server.add_insecure_port("127.0.0.1:0")
    server.start()
    try:
        yield f"127.0.0.1:{port}"
    finally:
        server.stop(None)


@pytest.fixture
def manager():
    """A ConnectionManager that is disconnected after the test."""
    from panggil.connection import ConnectionManager

    mgr = ConnectionManager()
    yield mgr
    mgr.disconnect()


@pytest.fixture
def endpoint(manager, greeter_server):
    """A live endpoint connected to the test server."""
    return manager.connect(greeter_server)
