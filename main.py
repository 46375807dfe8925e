"""Verify the extraction service is reachable and configured."""

import asyncio

from showcrawler.config import settings
from showcrawler.extractor import StructuredExtractionClient


async def main() -> None:
    print(f"Endpoint: {settings.llm_base_url}")
    print(f"Model: {settings.llm_model}")

    async with StructuredExtractionClient() as client:
        status = await client.test_connection()

    if status["available"]:
        print("Extraction service: available")
    else:
        print(f"Extraction service: unavailable ({status.get('error')})")
    print("Done.")


if __name__ == "__main__":
    asyncio.run(main())
