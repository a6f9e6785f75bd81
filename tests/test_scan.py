import pytest

from casedocs.classify import CandidateKind
from casedocs.errors import CaseFailure
from casedocs.scan import PageScanner, derive_case_id, parse_case_info


class FakeElement:
    def __init__(self, text="", **attrs):
        self.text = text
        self.attrs = attrs

    def inner_text(self):
        return self.text

    def get_attribute(self, name):
        return self.attrs.get(name)

    def is_visible(self):
        return True


class FakeList:
    def __init__(self, items):
        self.items = list(items)

    def count(self):
        return len(self.items)

    def nth(self, i):
        return self.items[i]

    @property
    def first(self):
        return self.items[0]

    def is_visible(self):
        return True


class FakeSection:
    def __init__(self, elements):
        self.elements = elements

    def locator(self, _selector):
        return FakeList(self.elements)


class LoggedOutPage:
    url = "https://auction.example.test/case/1"

    def locator(self, selector):
        if selector == "text=로그아웃":
            return FakeList([])
        return FakeList([FakeElement(type="password")])


def test_parse_case_info_with_case_number_and_round():
    info = parse_case_info(
        "사건번호: 2023 타경 12345 \n 3차 매각기일", title="서울 아파트", source_url="https://x.test/1"
    )
    assert info.case_no == "2023타경12345"
    assert info.round_label == "3차"
    assert info.case_id == "2023타경12345_3차"


def test_parse_case_info_defaults_to_first_round():
    info = parse_case_info("물건번호 2024-0123456-001", source_url="https://x.test/2")
    assert info.case_no == "2024-0123456-001"
    assert info.case_id == "2024-0123456-001_1차"


def test_case_id_without_number_is_stable_per_url():
    a = derive_case_id(None, "1차", source_url="https://x.test/a")
    b = derive_case_id(None, "2차", source_url="https://x.test/a")
    c = derive_case_id(None, "1차", source_url="https://x.test/c")
    assert a == b
    assert a != c
    assert a.startswith("case-") and len(a) == len("case-") + 10


def test_collect_filters_noise_and_dedupes():
    section = FakeSection(
        [
            FakeElement("감정평가서", href="javascript:void(0)", onclick="fileView('paView.php?idx=1')"),
            FakeElement("감정평가서", href="javascript:void(0)", onclick="fileView('paView.php?idx=1')"),
            FakeElement("관심물건 추가", href="#"),
            FakeElement("", value="등기부등본", href="/pa/paFile.php?idx=2"),
            FakeElement("지도", href="https://map.example.test/?q=1"),
        ]
    )

    candidates = PageScanner().collect(section)

    assert [c.label for c in candidates] == ["감정평가서", "등기부등본", "지도"]
    assert candidates[0].target_hint == "javascript:fileView('paView.php?idx=1')"
    assert candidates[1].target_hint == "/pa/paFile.php?idx=2"
    assert candidates[2].kind is CandidateKind.LINK


def test_collect_caps_items():
    section = FakeSection([FakeElement(f"자료 {i}", href=f"/f/{i}.pdf") for i in range(30)])
    assert len(PageScanner(max_items=4).collect(section)) == 4


def test_scan_refuses_logged_out_page():
    with pytest.raises(CaseFailure, match="login required"):
        PageScanner().scan(LoggedOutPage())
