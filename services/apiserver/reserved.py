import ipaddress
from bisect import bisect_left

# IPv4 ranges that are never dialed when intranet rejection is on.
# see https://en.wikipedia.org/wiki/Reserved_IP_addresses
RESERVED_NETWORKS = tuple(
	ipaddress.IPv4Network(cidr)
	for cidr in (
		"10.0.0.0/8",
		"100.64.0.0/10",
		"127.0.0.0/8",
		"169.254.0.0/16",
		"172.16.0.0/12",
		"192.0.0.0/24",
		"192.0.2.0/24",
		"192.18.0.0/15",
		"192.51.100.0/24",
		"192.88.99.0/24",
		"192.168.0.0/16",
		"203.0.113.0/24",
		"224.0.0.0/4",
		"240.0.0.0/4",
	)
)

# Answers injected by DNS interference. Edit freely, order does not matter.
POLLUTION_IPS = (
	"1.1.1.1",
	"1.2.3.4",
	"2.1.1.2",
	"4.36.66.178",
	"8.7.198.45",
	"10.10.10.10",
	"20.20.20.20",
	"23.89.5.60",
	"31.13.66.1",
	"31.13.68.22",
	"31.13.69.86",
	"31.13.74.40",
	"37.61.54.158",
	"42.123.125.237",
	"46.82.174.68",
	"49.2.123.56",
	"54.76.135.1",
	"59.24.3.173",
	"60.19.29.22",
	"61.131.208.210",
	"61.131.208.211",
	"64.33.88.161",
	"64.33.99.47",
	"64.66.163.251",
	"65.104.202.252",
	"65.160.219.113",
	"66.45.252.237",
	"69.171.247.20",
	"72.14.205.99",
	"72.14.205.104",
	"74.125.31.113",
	"74.125.39.102",
	"74.125.39.113",
	"74.125.127.102",
	"74.125.127.113",
	"74.125.130.47",
	"74.125.155.102",
	"77.4.7.92",
	"78.16.49.15",
	"92.242.144.2",
	"93.46.8.89",
	"108.160.166.92",
	"110.249.209.42",
	"118.5.49.6",
	"120.192.83.163",
	"123.129.254.12",
	"123.129.254.13",
	"123.129.254.14",
	"123.129.254.15",
	"125.211.213.132",
	"128.121.126.139",
	"159.106.121.75",
	"169.132.13.103",
	"183.221.250.11",
	"185.85.13.155",
	"188.5.4.96",
	"189.163.17.5",
	"192.67.198.6",
	"197.4.4.12",
	"202.98.24.122",
	"202.98.24.124",
	"202.98.24.125",
	"202.106.1.2",
	"202.181.7.85",
	"203.98.7.65",
	"203.161.230.171",
	"207.12.88.98",
	"208.56.31.43",
	"209.36.73.33",
	"209.85.229.138",
	"209.145.54.50",
	"209.220.30.174",
	"210.242.125.20",
	"211.94.66.147",
	"211.98.70.195",
	"211.98.70.226",
	"211.98.70.227",
	"211.98.71.195",
	"211.138.34.204",
	"211.138.74.132",
	"213.169.251.35",
	"216.221.188.182",
	"216.234.179.13",
	"218.93.250.18",
	"220.165.8.172",
	"220.165.8.174",
	"220.250.64.20",
	"221.179.46.190",
	"243.185.187.39",
	"249.129.46.48",
	"253.157.14.165",
	"255.255.255.255",
)

_POLLUTION_INTS = tuple(sorted(int(ipaddress.IPv4Address(ip)) for ip in POLLUTION_IPS))


def _to_ipv4(ip) -> ipaddress.IPv4Address | None:
	"""Return the IPv4 form of ``ip`` (including IPv4-mapped IPv6), else None."""
	if isinstance(ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
		ip_obj = ip
	else:
		try:
			ip_obj = ipaddress.ip_address(str(ip).strip())
		except ValueError:
			return None

	if isinstance(ip_obj, ipaddress.IPv6Address):
		return ip_obj.ipv4_mapped
	return ip_obj


def is_reserved_ip(ip) -> bool:
	"""True when ``ip`` is an IPv4 address in one of RESERVED_NETWORKS.

	IPv6 addresses are not classified and always return False.
	"""
	ip4 = _to_ipv4(ip)
	if ip4 is None:
		return False
	return any(ip4 in network for network in RESERVED_NETWORKS)


def is_pollution_ip(ip) -> bool:
	"""True when ``ip`` is one of the well-known poisoned IPv4 answers."""
	ip4 = _to_ipv4(ip)
	if ip4 is None:
		return False
	value = int(ip4)
	pos = bisect_left(_POLLUTION_INTS, value)
	return pos < len(_POLLUTION_INTS) and _POLLUTION_INTS[pos] == value
