import io

import pytest
from openpyxl import Workbook

from plate_reader.core.errors import ImportValidationError
from plate_reader.core.spreadsheet import (
    classify_link,
    content_hash,
    drive_file_id,
    is_xlsx,
    normalize_link,
    parse_rows,
    photo_hash,
)


def test_headers_are_normalized_and_values_kept_as_text():
    content = "IdPrisma,Link_Foto\n007,45_ROCHA/JPEG_1.jpg\n\n".encode("utf-8")

    rows = parse_rows(content)

    assert rows == [{"external_id": "007", "link": "45_ROCHA/JPEG_1.jpg"}]


def test_latin1_and_bom_are_decoded():
    bom = "\ufeffid;photo_link;observação\n1;a/b.jpg;ok\n".encode("utf-8")
    latin1 = "id;photo_link;observação\n1;a/b.jpg;ok\n".encode("latin-1")

    assert parse_rows(bom)[0]["external_id"] == "1"
    assert parse_rows(latin1)[0]["observação"] == "ok"


def test_missing_required_columns():
    with pytest.raises(ImportValidationError):
        parse_rows(b"name,url\nx,y\n")


def test_empty_content():
    with pytest.raises(ImportValidationError):
        parse_rows(b"   \n")


def workbook_bytes(rows, id_format=None):
    workbook = Workbook()
    sheet = workbook.active
    for row in rows:
        sheet.append(row)
    if id_format:
        for (cell,) in sheet.iter_rows(min_row=2, min_col=1, max_col=1):
            cell.number_format = id_format
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def test_xlsx_cells_are_read_as_text():
    content = workbook_bytes(
        [
            ["IdPrisma", "Link_Foto_Plaqueta", "Lote"],
            [12, "45_ROCHA/JPEG_1.jpg", 3.0],
            [345678, "https://photos.example.com/2.jpg", "B7"],
        ],
        id_format="000000",
    )

    rows = parse_rows(content)

    assert rows == [
        {"external_id": "000012", "link": "45_ROCHA/JPEG_1.jpg", "lote": "3"},
        {"external_id": "345678", "link": "https://photos.example.com/2.jpg", "lote": "B7"},
    ]


def test_xlsx_detected_by_name_or_signature():
    content = workbook_bytes([["id", "photo_link"], ["1", "a/b.jpg"]])

    assert is_xlsx(content)
    assert is_xlsx(b"id,photo_link\n", "45_ROCHA.XLSX")
    assert not is_xlsx(b"id,photo_link\n1,a/b.jpg\n", "45_ROCHA.csv")
    assert parse_rows(content, "45_ROCHA.xlsx") == [{"external_id": "1", "link": "a/b.jpg"}]


def test_unreadable_xlsx():
    with pytest.raises(ImportValidationError, match="XLSX"):
        parse_rows(b"PK\x03\x04 not really a workbook", "45_ROCHA.xlsx")


@pytest.mark.parametrize("link,expected", [
    ("https://host.example.com/45_ROCHA/JPEG_1.jpg", "45_ROCHA/JPEG_1.jpg"),
    ("G:\\Rio\\Levantamento\\141_PAVUNA\\a.jpg", "141_PAVUNA/a.jpg"),
    ("/45_ROCHA//JPEG_1.jpg", "45_ROCHA/JPEG_1.jpg"),
    ("45_ROCHA\\JPEG_1.jpg", "45_ROCHA/JPEG_1.jpg"),
    ("", ""),
])
def test_normalize_link(link, expected):
    assert normalize_link(link) == expected


def test_drive_links():
    assert drive_file_id("https://drive.google.com/file/d/1AbC/view") == "1AbC"
    assert drive_file_id("https://drive.google.com/open?id=XyZ") == "XyZ"
    assert drive_file_id("https://drive.usercontent.google.com/download?id=Q1&export=download") == "Q1"
    assert drive_file_id("https://host.example.com/a.jpg") is None


def test_classify_link_modes():
    url = "https://host.example.com/45_ROCHA/JPEG_1.jpg"

    assert classify_link(url, "auto") == ("http", url, "45_ROCHA/JPEG_1.jpg")
    assert classify_link(url, "ftp") == ("ftp", "45_ROCHA/JPEG_1.jpg", "45_ROCHA/JPEG_1.jpg")
    assert classify_link("45_ROCHA/JPEG_1.jpg", "http")[0] is None
    assert classify_link("https://drive.google.com/file/d/1AbC/view", "ftp") == ("drive", "1AbC", "drive:1AbC")
    assert classify_link("   ", "auto") == (None, None, "")


def test_hashes_are_stable():
    assert content_hash(b"abc") == content_hash(b"abc")
    assert content_hash(b"abc") != content_hash(b"abd")
    assert photo_hash("1", "a/b.jpg") == photo_hash("1", "a/b.jpg")
    assert photo_hash("1", "a/b.jpg") != photo_hash("01", "a/b.jpg")
