import asyncio
import sys

import atheris

with atheris.instrument_imports():
    from python_multipart.exceptions import FormParserError

    from await_multipart import parse


class EnhancedDataProvider(atheris.FuzzedDataProvider):
    def ConsumeRandomBytes(self) -> bytes:
        return self.ConsumeBytes(self.ConsumeIntInRange(0, self.remaining_bytes()))

    def ConsumeRandomString(self) -> str:
        return self.ConsumeUnicodeNoSurrogates(self.ConsumeIntInRange(0, self.remaining_bytes()))


async def chunks(data: bytes, size: int):
    for i in range(0, len(data), size):
        yield data[i : i + size]


async def drain(headers: dict, body: bytes, size: int) -> None:
    parts = parse(chunks(body, size), headers, auto_fields=True, limits={"parts": 10})
    async for part in parts:
        if part.length is None:
            await part.read()


def parse_url_encoded(fdp: EnhancedDataProvider) -> tuple:
    header = {"Content-Type": "application/x-www-form-urlencoded"}
    return header, fdp.ConsumeRandomBytes()


def parse_multipart_form_data(fdp: EnhancedDataProvider) -> tuple:
    boundary = "boundary"
    header = {"Content-Type": f"multipart/form-data; boundary={boundary}"}
    body = (
        f"--{boundary}\r\n"
        f"Content-Disposition: form-data; name=\"file\"; filename=\"a.txt\"\r\n\r\n"
        f"{fdp.ConsumeRandomString()}\r\n"
        f"--{boundary}--\r\n"
    )
    return header, body.encode("latin1", errors="ignore")


def TestOneInput(data: bytes) -> None:
    fdp = EnhancedDataProvider(data)
    targets = [parse_url_encoded, parse_multipart_form_data]
    target = fdp.PickValueInList(targets)
    size = fdp.ConsumeIntInRange(1, 64)

    try:
        asyncio.run(drain(*target(fdp), size))
    except FormParserError:
        return


def main():
    atheris.Setup(sys.argv, TestOneInput)
    atheris.Fuzz()


if __name__ == "__main__":
    main()
