"""Executive-order ingestion: fetch, extract, classify, dedup and store presidential actions."""
