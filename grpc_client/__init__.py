"""Client side of the gRPC runtime.

Build channels with `grpc_client.factory.AddressChannelFactory`; targets use
the `address://host:port,...` scheme resolved by `grpc_client.resolver`.
"""
