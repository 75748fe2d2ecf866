"""Order domain: records, status mapping, persistence, processing, listing."""
