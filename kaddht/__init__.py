"""Building blocks of a Kademlia distributed hash table: lookup peer sets, network size estimation, routing table refresh and the wire protocol."""

__version__ = "0.1.0"