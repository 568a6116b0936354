import io

from PIL import Image


def make_pdf_bytes(
    text: str = "test", pages: int = 1, width: int = 612, height: int = 792
) -> bytes:
    """Create a minimal valid PDF whose pages all show the given ASCII text."""
    content = f"BT /F1 12 Tf 50 {height - 92} Td ({text}) Tj ET\n".encode()

    page_ids = [5 + i for i in range(pages)]
    kids = " ".join(f"{pid} 0 R" for pid in page_ids)
    objects = [
        b"1 0 obj\n<</Type /Catalog /Pages 2 0 R>>\nendobj\n",
        f"2 0 obj\n<</Type /Pages /Kids [{kids}] /Count {pages}>>\nendobj\n".encode(),
        b"3 0 obj\n<</Type /Font /Subtype /Type1 /BaseFont /Helvetica>>\nendobj\n",
        f"4 0 obj\n<</Length {len(content)}>>\nstream\n".encode()
        + content
        + b"endstream\nendobj\n",
    ]
    for pid in page_ids:
        objects.append(
            f"{pid} 0 obj\n<</Type /Page /Parent 2 0 R"
            f" /MediaBox [0 0 {width} {height}] /Contents 4 0 R"
            f" /Resources <</Font <</F1 3 0 R>>>>>>\nendobj\n".encode()
        )

    header = b"%PDF-1.4\n"
    body = b""
    offsets: list[int] = []
    for obj in objects:
        offsets.append(len(header) + len(body))
        body += obj

    size = len(objects) + 1
    xref_offset = len(header) + len(body)
    xref = f"xref\n0 {size}\n0000000000 65535 f \n"
    for off in offsets:
        xref += f"{off:010d} 00000 n \n"
    trailer = (
        f"trailer\n<</Size {size} /Root 1 0 R>>\nstartxref\n{xref_offset}\n%%EOF\n"
    )

    return header + body + xref.encode() + trailer.encode()


def make_image_bytes(width: int = 1024, height: int = 768, fmt: str = "PNG") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), "white").save(buffer, format=fmt)
    return buffer.getvalue()
